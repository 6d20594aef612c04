"""
Protocol definition for messaging endpoints.

Defines the common interface that all endpoint senders must implement
and the unit of work exchanged with resend queues.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable


class DeliveryStatus(Enum):
    """Outcome of a delivery attempt."""

    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    # The recipient is fine but this message can never be accepted
    REJECTED = "rejected"


@dataclass
class NotificationMessage:
    """
    A formatted notification addressed to one recipient.

    Attributes
    ----------
    recipient_id : str
        Endpoint-specific recipient handle (a chat ID for Telegram).
    text : str
        Fully formatted message body.
    endpoint : str
        Name of the endpoint that owns the message.
    repo : str
        Repository of the subscription that produced the message.
    filter_name : str
        Filter of the subscription that produced the message.
    """

    recipient_id: str
    text: str
    endpoint: str = ""
    repo: str = ""
    filter_name: str = ""


@runtime_checkable
class EndpointSender(Protocol):
    """
    Protocol defining the interface for messaging endpoints.

    ``send`` never raises for delivery problems: failures are reported
    through the returned status so callers can choose between retrying
    and unsubscribing the recipient.
    """

    name: str

    async def test_connection(self) -> bool:
        """
        Test the connection to the messaging backend.

        Returns
        -------
        bool
            True if the connection is working and messages can be sent.
        """
        ...

    async def send(self, recipient_id: str, text: str) -> DeliveryStatus:
        """
        Send a text message to one recipient.

        Parameters
        ----------
        recipient_id : str
            Endpoint-specific recipient handle.
        text : str
            Formatted message body.

        Returns
        -------
        DeliveryStatus
            SUCCESS, or whether the failure is worth retrying.
        """
        ...

    def classify_error(self, error: Exception) -> DeliveryStatus:
        """
        Decide whether a delivery error is transient or permanent.

        Parameters
        ----------
        error : Exception
            The error raised by the backend.

        Returns
        -------
        DeliveryStatus
            TRANSIENT, PERMANENT or REJECTED.
        """
        ...

    async def close(self) -> None:
        """Close the sender and release any resources."""
        ...
