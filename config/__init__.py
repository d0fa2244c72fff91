# Configuration module for the asset tracking service
from .settings import Settings, Environment, ConfigurationError, get_settings, validate_startup

__all__ = ["Settings", "Environment", "ConfigurationError", "get_settings", "validate_startup"]
