"""Structured JSON logging."""
from .json_logger import JsonLogger

__all__ = ["JsonLogger"]
