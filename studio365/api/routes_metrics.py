from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from studio365.api.dependencies import AdminDep

router = APIRouter()


@router.get("/metrics")
def metrics_endpoint(_admin: AdminDep) -> Response:
    # Counters are incremented at event points; just expose the registry.
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
