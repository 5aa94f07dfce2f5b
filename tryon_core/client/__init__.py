"""
Client for Try-On Core.

Provides the consumer-side polling loop for generation jobs.
"""

from .poller import JobPoller, PollResult

__all__ = ["JobPoller", "PollResult"]
