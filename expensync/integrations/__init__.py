"""
Expensync Integrations

- freee accounting (OAuth connection and REST client)
"""

from expensync.integrations.freee_client import (
    DealDetail,
    DealRequest,
    FreeeClient,
    get_freee_client,
)

__all__ = [
    "DealDetail",
    "DealRequest",
    "FreeeClient",
    "get_freee_client",
]
