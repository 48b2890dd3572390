#!/usr/bin/env python3
"""Unified entry point for the Reminder Scheduling Service.

Starts the REST API and the job worker as subprocesses and stops both when
either one exits or a shutdown signal arrives.
"""

import os
import signal
import subprocess
import sys
import time
from typing import Dict

import database
from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'service.log')

SERVICES = {
    "api": "api_server.py",
    "worker": "background_worker.py",
}

processes: Dict[str, subprocess.Popen] = {}
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    if shutdown_requested:
        logger.warning("Force shutdown requested")
        sys.exit(1)

    shutdown_requested = True
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_services()


def shutdown_services(exit_code: int = 0):
    """Stop all running services."""
    logger.info("Stopping all services...")
    for name, process in processes.items():
        if process.poll() is None:
            logger.info(f"Terminating {name} (PID: {process.pid})")
            process.terminate()

    # Wait for graceful termination (max 5 seconds per process)
    for name, process in processes.items():
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Force killing {name} (PID: {process.pid})")
            process.kill()
            process.wait()

    logger.info("All services stopped")
    sys.exit(exit_code)


def main():
    """Main entry point - start all services."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("Reminder Scheduling Service - Unified Startup")
    logger.info("=" * 60)

    current_dir = os.path.dirname(os.path.abspath(__file__))

    # Create tables once before both processes race to do it
    database.init_db()

    try:
        for name, script in SERVICES.items():
            logger.info(f"Starting {name} ({script})...")
            processes[name] = subprocess.Popen(
                [sys.executable, script],
                cwd=current_dir,
            )
            time.sleep(2)

        logger.info("=" * 60)
        logger.info("All services started successfully!")
        logger.info(f"  - API Server: http://{settings.API_HOST}:{settings.API_PORT}")
        logger.info(f"  - API Docs: http://{settings.API_HOST}:{settings.API_PORT}/docs")
        logger.info(f"  - Worker: polling every {settings.WORKER_CHECK_INTERVAL}s")
        logger.info("=" * 60)

        while not shutdown_requested:
            for name, process in processes.items():
                if process.poll() is not None:
                    logger.error(f"{name} (PID: {process.pid}) has stopped unexpectedly!")
                    shutdown_services(exit_code=1)
            time.sleep(5)

    except OSError as e:
        logger.error(f"Error starting services: {e}")
        shutdown_services(exit_code=1)


if __name__ == "__main__":
    main()
