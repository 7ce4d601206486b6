"""
Notification Service Domain Exceptions
"""


class NotificationServiceError(Exception):
    """Base exception for notification service errors"""
    pass


class ChannelNotConfiguredError(NotificationServiceError):
    """Requested channel (telegram, email) has no credentials"""
    pass
