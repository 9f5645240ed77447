"""
API routes split by domain.

Each sub-module defines its own APIRouter which is composed
into the top-level router exposed by this package.
"""
from fastapi import APIRouter

from .health import router as health_router
from .report import router as report_router

router = APIRouter(tags=["api"])

router.include_router(health_router)
router.include_router(report_router)
