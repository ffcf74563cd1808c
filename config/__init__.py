# Config module
from .settings import Settings, get_settings, configure_logging
