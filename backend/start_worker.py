#!/usr/bin/env python3
"""
Starts a Celery worker (with the embedded beat scheduler that polls for due
enrollments) unless one is already answering pings.
"""

import argparse
import logging
import subprocess
import sys
import time

from crm_automation import config
from crm_automation.celery_config import celery_app

logger = logging.getLogger(__name__)


def check_celery_worker() -> bool:
    try:
        replies = celery_app.control.ping(timeout=2.0)
        if replies:
            logger.info(f"Celery worker is running: {[list(reply)[0] for reply in replies]}")
            return True
        logger.warning("No active Celery workers found")
        return False
    except Exception as e:
        logger.error(f"Failed to check Celery worker status: {e}")
        return False


def build_command(concurrency: int, with_beat: bool):
    cmd = [
        "celery",
        "-A", "crm_automation.celery_worker.celery",
        "worker",
        f"--loglevel={config.LOG_LEVEL.lower()}",
        f"--concurrency={concurrency}",
    ]
    if with_beat:
        cmd.append("--beat")
    return cmd


def start_celery_worker(concurrency: int, with_beat: bool):
    cmd = build_command(concurrency, with_beat)
    logger.info(f"Running command: {' '.join(cmd)}")
    process = subprocess.Popen(cmd)
    logger.info(f"Celery worker started with PID: {process.pid}")
    return process


def main():
    parser = argparse.ArgumentParser(description="Start the automation Celery worker if none is running")
    parser.add_argument("--concurrency", type=int, default=config.LOCAL_WORKER_CONCURRENCY)
    parser.add_argument("--no-beat", action="store_true", help="do not run the periodic due-work poll in this worker")
    args = parser.parse_args()

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("=== CELERY WORKER CHECK ===")

    if check_celery_worker():
        logger.info("Worker is already running, no action needed")
        return

    process = start_celery_worker(args.concurrency, with_beat=not args.no_beat)
    logger.info("Press Ctrl+C to stop the worker")
    try:
        while True:
            time.sleep(1)
            if process.poll() is not None:
                logger.error("Worker process died unexpectedly")
                sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Stopping worker...")
        process.terminate()
        process.wait()
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
