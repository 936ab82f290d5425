"""Sink protocol for operator notifications.

All sinks implement the ``BaseSink`` protocol: a ``sink_name`` property
and an ``accept(notification)`` method.  The dispatcher calls ``accept``
on every registered sink for every notification.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from patchkit.models.notifications import Notification


@runtime_checkable
class BaseSink(Protocol):
    """Protocol that every notification sink must implement.

    Attributes
    ----------
    sink_name : str
        A unique human-readable identifier for this sink instance
        (e.g. ``"discord"``, ``"local_file"``).
    """

    @property
    def sink_name(self) -> str:
        """Return the unique name of this sink."""
        ...

    def accept(self, notification: Notification) -> None:
        """Deliver a notification.

        May raise; the dispatcher logs the failure and moves on to the
        next sink.
        """
        ...
