"""本地启动 worker：python -m infrastructure.tasks.worker（生产直接用 celery CLI）"""
from __future__ import annotations

from .config.celery import celery_app

WORKER_QUEUES = "high,default,low"


def main() -> None:
    celery_app.worker_main(argv=["worker", "--loglevel=INFO", "--hostname=payments@%h", "-Q", WORKER_QUEUES])


if __name__ == "__main__":
    main()
