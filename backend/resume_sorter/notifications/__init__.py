"""
Notifications Package — customer-visible email after a confirmed count.

Public API::

    from resume_sorter.notifications import NotificationDispatcher, ResendEmailSender

    dispatcher = NotificationDispatcher(ResendEmailSender())
    outcome = await dispatcher.dispatch(pipeline_result)
"""

from resume_sorter.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationError,
    NotificationEvent,
    NotificationOutcome,
    NotificationSender,
    ResendEmailSender,
)

__all__ = [
    "NotificationDispatcher",
    "NotificationError",
    "NotificationEvent",
    "NotificationOutcome",
    "NotificationSender",
    "ResendEmailSender",
]
