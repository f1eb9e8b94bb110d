"""
Configuration handler for backend.files_manager.
Loads .env and config.toml with ${env:VAR|default} expansion and exposes typed settings.
"""

from backend.files_manager.config_handler.config import Settings, load_settings, settings  # noqa: F401
