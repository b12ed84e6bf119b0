"""Job queue exceptions."""
from __future__ import annotations


class PermanentJobError(Exception):
    """Raised by a job handler when retrying cannot help.

    The queue abandons the job immediately instead of scheduling another
    attempt.
    """
