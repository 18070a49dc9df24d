"""ASGI entry point: ``uvicorn cmsflow.api.main:app``."""
from cmsflow.api.app import create_app

app = create_app()
