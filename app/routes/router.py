from fastapi import APIRouter

from app.routes import admin, auth, books, checkouts, reminders

router = APIRouter()
router.include_router(auth.router)
router.include_router(books.router)
router.include_router(checkouts.router)
router.include_router(admin.router)
router.include_router(reminders.router)
