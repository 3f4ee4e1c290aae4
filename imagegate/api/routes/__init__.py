from fastapi import FastAPI

from .packages import router as packages_router
from .repos import router as repos_router
from .requests import router as requests_router


def register_routes(app: FastAPI):
    app.include_router(requests_router, prefix="/v1")
    app.include_router(packages_router, prefix="/v1")
    app.include_router(repos_router, prefix="/v1")
