from src.scheduler.main import (
    SWEEP_LOCK,
    run_sweep_once,
    scheduler_loop,
)

__all__ = [
    "SWEEP_LOCK",
    "run_sweep_once",
    "scheduler_loop",
]
