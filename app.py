# app.py
from __future__ import annotations

import os
import sys

BASE_DIR = os.path.dirname(__file__)

if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

os.environ.setdefault("PYTHONUNBUFFERED", "1")

from asgiref.wsgi import AsgiToWsgi  # noqa: E402

from nextbus.main import app as fastapi_app  # noqa: E402

application = AsgiToWsgi(fastapi_app)
