"""
Remote service integrations for the pipeline client.
"""

from .transfer_gateway import TransferGateway, extract_error_message

__all__ = [
    "TransferGateway",
    "extract_error_message",
]
