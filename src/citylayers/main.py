"""CityLayers - layer authoring service.

Main FastAPI application.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from citylayers import __version__
from citylayers.api.router import router as authoring_router
from citylayers.config import settings

app = FastAPI(
    title=settings.app_name,
    description="Author city layers from uploaded files or drawn geometry",
    version=__version__,
    debug=settings.debug,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(authoring_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "app": settings.app_name, "version": __version__}
