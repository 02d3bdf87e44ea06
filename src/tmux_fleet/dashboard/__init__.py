"""Interactive and scripted front-ends for the fleet dashboard."""

from .api import create_app
from .controller import DashboardController
from .controller import Mode

__all__ = ["create_app", "DashboardController", "Mode"]
