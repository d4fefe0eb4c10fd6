"""Configuration module for cloudadmin."""
from .settings import AppConfig, load_settings

__all__ = ["AppConfig", "load_settings"]
