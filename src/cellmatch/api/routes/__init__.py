"""Route group exports."""

from . import cells, health, presence, requests

__all__ = ["presence", "requests", "cells", "health"]
