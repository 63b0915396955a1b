"""Shared utilities (logging)."""
from auctionmind.utils.logger import get_logger

__all__ = ["get_logger"]
