"""
exam_engine/routes/__init__.py
Route registration
"""
from fastapi import APIRouter
from exam_engine.routes import exams, attempts, reattempts

router = APIRouter()

router.include_router(exams.router)
router.include_router(attempts.router)
router.include_router(reattempts.router)
