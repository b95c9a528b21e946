# main.py
"""
Entry point.
    uvicorn main:app --port 3000
"""
import logging, sys

from ragchat.api import create_app
from ragchat.config import settings

root = logging.getLogger()
if not root.handlers:
    h = logging.StreamHandler(sys.stdout)
    h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(h)
    root.setLevel(settings.LOG_LEVEL.upper())

app = create_app()
