"""tripsync - progress synchronization for itinerary generation jobs.

Reconciles a push event stream and a status poller into one monotonic
progress record for a server-side generation job, drives a smoothed
display value, and fires a completion or error callback exactly once.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tripsync")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

__all__ = ["__version__"]
