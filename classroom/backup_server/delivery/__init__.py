"""
Delivery module for the classroom backup server.

Pushes snapshots off-box through independent channels:
- webhook: multipart upload to an HTTP endpoint
- s3: object in an S3 bucket
- email: SMTP message with the snapshot attached

Invariants:
    - Channels are independent; one failure never blocks another
    - Unconfigured channels are skipped, not failed
"""

from .base import Channel, ChannelResult, ChannelStatus, DeliveryChannel
from .dispatcher import PARTIAL_DELIVERY_FAILURE, SUCCESS, DeliveryDispatcher, outcome_for
from .email import EmailChannel
from .s3 import S3Channel
from .webhook import WebhookChannel

__all__ = [
    "Channel",
    "ChannelResult",
    "ChannelStatus",
    "DeliveryChannel",
    "DeliveryDispatcher",
    "EmailChannel",
    "S3Channel",
    "WebhookChannel",
    "outcome_for",
    "SUCCESS",
    "PARTIAL_DELIVERY_FAILURE",
]
