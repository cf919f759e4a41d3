from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])

@router.get("/health")
async def health(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "ok",
        "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
    }
