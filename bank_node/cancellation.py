"""
Cancellation Token Module

A command's deadline and its mutation race for one token. Whoever moves the
token first wins: once a mutation has begun committing it can no longer be
cancelled, and once cancelled no mutation may begin committing.
"""


class OperationCancelled(Exception):
    """Raised by begin_commit() when the deadline already fired"""


class CancellationToken:
    """Decides, exactly once, between commit and cancellation.

    All transitions happen on the event loop thread, so no lock is needed.
    """

    def __init__(self):
        self._cancelled = False
        self._committing = False

    def cancel(self) -> bool:
        """Cancel unless a commit already began; returns whether it took effect"""
        if self._committing:
            return False
        self._cancelled = True
        return True

    def begin_commit(self) -> None:
        """Claim the right to write; raises OperationCancelled if too late"""
        if self._cancelled:
            raise OperationCancelled("Operation was cancelled before it could commit")
        self._committing = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled("Operation was cancelled")
