"""
Content Desk worker: periodic scheduler sweeps, fan-out, digests and delivery.
"""

from .loop import WorkerLoop, run_worker

__all__ = ["WorkerLoop", "run_worker"]
