"""
asgi.py -- Application assembly for formlogin.

This is the ONLY file that imports from both api/ and web/. It joins the two
independent layers into a single ASGI app without coupling them to each other.

Run with:  uvicorn asgi:app --reload
"""

from pathlib import Path

from fastapi.staticfiles import StaticFiles

from api.main import app
from web.routes import router as web_router

# Mount the web UI router here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"])

# Served without authentication: /static/** is in the default public allow-set.
app.mount("/static", StaticFiles(directory=str(Path(__file__).parent / "web" / "static")), name="static")
