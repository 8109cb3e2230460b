"""任务模块；导入即注册到 celery_app"""
from . import payments  # noqa: F401

__all__ = ["payments"]
