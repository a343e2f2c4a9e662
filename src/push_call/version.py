"""Version information for push-call."""

APP_VERSION = "0.1.0"
