"""
NGINX configuration generator.

Generates gateway configuration files (proxy sites, SNI stream routes and
nginx.conf) from stored records using Jinja2 templates.
"""

from .generator import ConfigGenerator, ConfigGeneratorError, get_config_generator

__all__ = ["ConfigGenerator", "ConfigGeneratorError", "get_config_generator"]
