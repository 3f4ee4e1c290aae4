from fastapi import APIRouter, Depends, HTTPException

from imagegate.api.core.container import get_container
from imagegate.core.errors import ExternalToolError, ParseError

router = APIRouter(prefix="/repos", tags=["Repositories"])


@router.get("")
async def list_repos(container=Depends(get_container)):
    """Repositories of the organization, as reported by chainctl."""
    try:
        names = await container.gateway.list_repo_names()
    except (ExternalToolError, ParseError) as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"items": [{"name": name} for name in names]}
