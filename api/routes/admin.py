# api/routes/admin.py
from fastapi import APIRouter, Depends

from api.dependencies import get_engine, require_admin_token
from services.errors import NotFound

router = APIRouter(dependencies=[Depends(require_admin_token)])

@router.post("/admin/system-licenses/reload")
async def reload_system_licenses(engine=Depends(get_engine)):
    """Re-read the system license document; a bad document keeps the current set live"""
    snapshot = await engine.system_licenses.reload()
    return {
        "status": "reloaded",
        "generation": snapshot.generation,
        "licenses": len(snapshot),
        "source": snapshot.source,
        "loaded_at": snapshot.loaded_at.isoformat(),
    }

@router.get("/admin/system-licenses")
async def list_system_licenses(engine=Depends(get_engine)):
    snapshot = engine.system_licenses.snapshot
    return {
        "generation": snapshot.generation,
        "licenses": [license.model_dump() for license in snapshot.licenses.values()],
    }

@router.get("/admin/published-posts/{thread_id}")
async def get_published_post(thread_id: int, engine=Depends(get_engine)):
    post = await engine.publications.get(thread_id)
    if post is None:
        raise NotFound(f"Thread {thread_id} has no published license")
    return {
        "thread_id": str(post.thread_id),
        "message_id": str(post.message_id),
        "user_id": str(post.user_id),
        "backup_allowed": post.backup_allowed,
        "license_name": post.license_name,
        "license_source": post.license_source,
        "template_id": post.template_id,
        "revision": post.revision,
        "updated_at": post.updated_at.isoformat() if post.updated_at else None,
    }
