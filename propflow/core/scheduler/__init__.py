# propflow/core/scheduler/__init__.py
"""
Long-running loop that repeatedly drains the run queue.

Example usage:
    from propflow.core.scheduler import BatchScheduler

    scheduler = BatchScheduler(app)
    await scheduler.run_forever()
"""

from propflow.core.scheduler.service import BatchScheduler

__all__ = ['BatchScheduler']
