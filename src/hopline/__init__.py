"""Hopline - resumable agent turns, one durable hop at a time."""

from hopline.app import Hopline
from hopline.service import ChatService, SendResult, SessionDetails

__version__ = "0.1.0"

__all__ = ["ChatService", "Hopline", "SendResult", "SessionDetails"]
