from .base_task import BaseTask, run_with_container

__all__ = ["BaseTask", "run_with_container"]
