"""Feature endpoint sets built on PortalSession.

Each module groups the calls for one area of the Device Portal API and
takes the session as its first argument.
"""

from . import holographic, networking, os_info, performance, xbox

__all__ = [
    "holographic",
    "networking",
    "os_info",
    "performance",
    "xbox",
]
