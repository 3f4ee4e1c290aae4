from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from imagegate.api.core.container import get_container
from imagegate.api.schemas import PackageSearchOut
from imagegate.domain.packages.search import popular_packages

router = APIRouter(prefix="/packages", tags=["Packages"])


@router.get("/search", response_model=PackageSearchOut)
async def search_packages(
    q: str = Query(min_length=1, description="Package name or keyword"),
    container=Depends(get_container),
):
    result = await container.package_search.search(q)
    return PackageSearchOut(**asdict(result))


@router.get("/popular")
async def get_popular_packages() -> dict[str, list[str]]:
    return popular_packages()
