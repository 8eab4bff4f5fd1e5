"""
Clients for external usage and exchange-rate sources.
"""

from .errors import SourceNotConfiguredError, UsageSourceError
from .exchange_rate import ExchangeRateClient
from .retell import ConversationRecord, RetellClient
from .twilio import TelephonyCallRecord, TelephonyMessageRecord, TwilioClient

__all__ = [
    "ConversationRecord",
    "ExchangeRateClient",
    "RetellClient",
    "SourceNotConfiguredError",
    "TelephonyCallRecord",
    "TelephonyMessageRecord",
    "TwilioClient",
    "UsageSourceError",
]
