from fastapi import Request
from fastapi.routing import APIRouter
from pydantic import BaseModel

from racky.utils import get_version
from routers.jobs import router as jobs_router

API_VERSION = "v1"


class RootResponse(BaseModel):
    message: str
    version: str


app_router = APIRouter(prefix=f"/api/{API_VERSION}")
@app_router.get("/", operation_id="root")
async def root(_: Request) -> RootResponse:
    return RootResponse(message="Racky jobs is running!", version=get_version())

app_router.include_router(jobs_router)
