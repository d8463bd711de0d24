"""Configuration: environment settings and virtual garden imports."""

from vgarden.config.imports import Imports, load_imports
from vgarden.config.settings import Settings, get_settings

__all__ = ["Imports", "Settings", "get_settings", "load_imports"]
