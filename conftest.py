"""
Root pytest configuration.

Settings come from the environment, falling back to .env.development
(sqlite, eager Celery); see config/settings.py. Project-wide fixtures
live in app/conftest.py.
"""

import os

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")
