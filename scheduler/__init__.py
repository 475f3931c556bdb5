from .deadline import DeadlineScheduler, SweepReport

__all__ = ["DeadlineScheduler", "SweepReport"]
