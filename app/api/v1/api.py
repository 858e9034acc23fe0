from fastapi import APIRouter

from app.api.v1.endpoints import admin, cron, tenants, vm

api_router = APIRouter()
api_router.include_router(tenants.router, prefix="/tenants", tags=["tenants"])
api_router.include_router(vm.router, prefix="/vm", tags=["vm"])
api_router.include_router(admin.router, prefix="/admin", tags=["platform-admin"])
api_router.include_router(cron.router, prefix="/cron", tags=["cron"])
