"""Concrete request executors."""

from pagewalk.executors.http import HttpRequestExecutor

__all__ = ["HttpRequestExecutor"]
