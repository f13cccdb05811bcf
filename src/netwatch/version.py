"""Version information for netwatch."""

APP_VERSION = "0.4.0"
