"""Dataclass models describing margin guard configuration."""

from . import models
from .models import *  # noqa: F401,F403

__all__ = models.__all__
