"""
Root pytest configuration for the Django project.

Points Django at the project settings before collection. App-specific
fixtures live in app/conftest.py and each app's tests/conftest.py.
"""

import os

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")
