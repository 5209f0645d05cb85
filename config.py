"""
Application configuration, read once from the environment.
"""

import os

DATA_DIR = os.getenv("DATA_DIR", "./data")
SETTINGS_DIR = os.getenv("SETTINGS_DIR", "./settings")

# ----- Delivery -----
CUTOFF_HOUR = int(os.getenv("CUTOFF_HOUR", 23))  # 11 PM default
DELIVERY_HOUR = int(os.getenv("DELIVERY_HOUR", 8))

# ----- Auth -----
MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH", 6))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
