#!/usr/bin/env python3
"""Start the notevault sync daemon.

Usage:
    Foreground:  python scripts/start_daemon.py
    Background:  python scripts/start_daemon.py --daemon
    Stop:        python scripts/start_daemon.py --stop

Foreground mode runs in the current terminal (Ctrl+C to stop).
Daemon mode detaches the process and writes a PID file + log to data/.
"""

import argparse
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path

# Ensure the project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from notevault import config  # noqa: E402


def _is_pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except (OSError, ProcessLookupError):
        return False


def _acquire_lock(lock_path: Path):
    """Acquire an exclusive file lock to prevent dual-daemon startup.

    Returns the open file handle (must stay open for lock to persist)
    or None if another daemon holds the lock.
    """
    import fcntl

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fh = open(lock_path, "w")
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        fh.write(str(os.getpid()))
        fh.flush()
        return fh
    except OSError:
        return None


def run_foreground() -> None:
    """Run the daemon in the foreground."""
    config.ensure_data_dirs()
    lock_handle = _acquire_lock(config.DATA_DIR / "daemon.lock")
    if lock_handle is None:
        print("Another daemon instance holds the lock. Exiting.")
        sys.exit(1)

    # Always log to file; also log to stderr if available.
    handlers = [logging.FileHandler(str(config.DAEMON_LOG_FILE))]
    try:
        sys.stderr.write("")
        handlers.append(logging.StreamHandler(sys.stderr))
    except (OSError, ValueError, AttributeError):
        pass

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=handlers,
    )
    try:
        from notevault.daemon import build_daemon
        dm = build_daemon()
        dm.start()
    except Exception:
        logging.exception("Daemon crashed with unhandled exception")
    finally:
        lock_handle.close()


def run_daemon() -> None:
    """Spawn the daemon as a detached background process."""
    config.ensure_data_dirs()
    pid_file = config.DAEMON_PID_FILE

    if pid_file.exists():
        try:
            old_pid = int(pid_file.read_text().strip())
            if _is_pid_alive(old_pid):
                print(f"Daemon already running (pid={old_pid}). Stop it first.")
                sys.exit(1)
        except ValueError:
            pass
        pid_file.unlink(missing_ok=True)

    proc = subprocess.Popen(
        [sys.executable, str(Path(__file__).resolve())],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    pid_file.write_text(str(proc.pid))
    print(f"notevault daemon started in background (pid={proc.pid})")
    print(f"  Log: {config.DAEMON_LOG_FILE}")
    print(f"  PID: {pid_file}")
    print(f"  Stop: python {Path(__file__).name} --stop")


def stop_daemon() -> None:
    """Stop the daemon by reading PID file and sending SIGTERM."""
    config.init()
    pid_file = config.DAEMON_PID_FILE

    if not pid_file.exists():
        print("Daemon is not running (no PID file).")
        return

    try:
        pid = int(pid_file.read_text().strip())
    except (ValueError, FileNotFoundError):
        print("Invalid PID file.")
        pid_file.unlink(missing_ok=True)
        return

    if not _is_pid_alive(pid):
        print(f"Daemon process {pid} is not running. Cleaning up PID file.")
        pid_file.unlink(missing_ok=True)
        return

    try:
        os.kill(pid, signal.SIGTERM)
        print(f"Stopped daemon (pid={pid}).")
    except (OSError, ProcessLookupError) as e:
        print(f"Failed to stop daemon: {e}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Start/stop the notevault sync daemon")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--daemon", "-d", action="store_true", help="Run as a background daemon")
    group.add_argument("--stop", "-s", action="store_true", help="Stop the running daemon")
    args = parser.parse_args()

    if args.stop:
        stop_daemon()
    elif args.daemon:
        run_daemon()
    else:
        run_foreground()


if __name__ == "__main__":
    main()
