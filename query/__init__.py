"""
Read access to live asset state.
"""

from query.service import NO_ASSETS_MESSAGE, QueryService, to_feature

__all__ = ["NO_ASSETS_MESSAGE", "QueryService", "to_feature"]
