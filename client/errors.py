"""
Venue failure taxonomy. Venue clients translate their transport errors into these.
"""

from __future__ import annotations


class VenueError(Exception):
    """Any failure reported by, or while talking to, a venue."""
    pass


class VenueTimeout(VenueError):
    """The venue did not answer in time. Usually transient."""
    pass


class OrderNotFound(VenueError):
    """An order id we track is unknown to the venue."""
    pass


class OrderArgumentError(VenueError):
    """The venue rejected order arguments (price, quantity, pair)."""
    pass
