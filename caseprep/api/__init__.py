"""REST boundary for the feedback pipeline."""

from caseprep.api.app import create_app

__all__ = ["create_app"]
