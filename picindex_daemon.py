import argparse
import errno
import fcntl
import logging
import os
import signal
import sys
import time

from config.config_manager import ConfigManager
from core.library_service import LibraryService


# Holds the exclusive lock fd; must not be GC'd for the process lifetime.
_instance_lock_fd = None


def _acquire_instance_lock(pid_file_path: str):
    parent = os.path.dirname(pid_file_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    fd = open(pid_file_path, "a+")
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN):
            fd.seek(0)
            existing_pid = fd.read().strip()
            pid_info = f" (PID {existing_pid})" if existing_pid else ""
            print(f"picindex daemon is already running{pid_info}. Exiting.", file=sys.stderr)
            fd.close()
            sys.exit(1)
        raise
    fd.seek(0)
    fd.truncate()
    fd.write(str(os.getpid()))
    fd.flush()
    return fd


def setup_logging(log_level, log_dir="~/.picindex"):
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    log_dir = os.path.expanduser(log_dir)
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "daemon.log")
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        handlers=[
            logging.FileHandler(log_path, mode="a"),
            logging.StreamHandler(sys.stderr)
        ]
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="picindex: library indexing and thumbnail cache daemon.")
    parser.add_argument("--config", default=None, help="Path to config.yaml.")
    parser.add_argument(
        "--scan",
        choices=["none", "sync", "full"],
        default="sync",
        help="Scan to run on every configured library at startup.",
    )
    parser.add_argument(
        "--watch",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Watch libraries for changes (defaults to watcher.auto_start).",
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config_manager = ConfigManager(args.config)
    logging_level = config_manager.logging_level
    log_dir = config_manager.get("log_dir", "~/.picindex")
    setup_logging(logging_level, log_dir)
    logging.info(f"Logging level set to: {logging_level.upper()}")

    global _instance_lock_fd
    pid_file_path = os.path.join(os.path.expanduser(log_dir), "daemon.pid")
    _instance_lock_fd = _acquire_instance_lock(pid_file_path)
    logging.info(f"Instance lock acquired: {pid_file_path}")

    if args.watch is not None:
        config_manager.config.setdefault("watcher", {})["auto_start"] = args.watch

    service = None

    def shutdown_service(signum=None, frame=None):
        logging.info("Shutting down picindex daemon...")
        if service is not None:
            service.shutdown()
        global _instance_lock_fd
        if _instance_lock_fd is not None:
            try:
                _instance_lock_fd.close()
            except OSError:
                logging.warning("Failed to release instance lock fd on shutdown.")
            _instance_lock_fd = None
        logging.info("Daemon shutdown complete.")
        sys.exit(0)

    try:
        service = LibraryService(config_manager)
        for library in service.list_libraries():
            if os.path.isdir(library["path"]):
                logging.info(f"Library {library['id']}: {library['path']}")
            else:
                logging.warning(f"Library {library['id']} path does not exist: {library['path']}")

        service.start_background_services()

        for library in service.list_libraries():
            if args.scan == "full":
                service.full_scan(library["id"])
            elif args.scan == "sync":
                service.incremental_sync(library["id"])

        signal.signal(signal.SIGINT, shutdown_service)
        signal.signal(signal.SIGTERM, shutdown_service)

        # Keep the main thread alive
        while True:
            time.sleep(1)

    except Exception as e:  # why: startup failure must be logged before process dies; no narrower type covers all init failures
        logging.error(f"Daemon failed to start: {e}", exc_info=True)
        shutdown_service()


if __name__ == "__main__":
    main()
