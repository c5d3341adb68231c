"""Listener interface for robust estimation events.

Callbacks are invoked synchronously on the thread running estimate(). The
estimator is locked while they run: reading its state is allowed, while any
setter or a nested estimate() raises LockedException.
"""


class RobustEstimatorListener:
    """Receives estimation events. All callbacks are no-ops by default."""

    def on_estimate_start(self, estimator) -> None:
        """Called once when estimation starts, before the first iteration."""

    def on_estimate_end(self, estimator) -> None:
        """Called once when estimation succeeds, before the estimator is unlocked."""

    def on_estimate_next_iteration(self, estimator, iteration: int) -> None:
        """Called after each completed iteration (1-based index)."""

    def on_estimate_progress_change(self, estimator, progress: float) -> None:
        """Called when progress in [0, 1] advanced by at least the progress delta."""
