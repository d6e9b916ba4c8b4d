import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatflow.api.endpoints import chatbots
from chatflow.core.config import settings
from chatflow.db.session import create_tables

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    create_tables()

    yield


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="API for chatbot flows",
    version="0.1.0",
    lifespan=lifespan,
    openapi_url=f"{settings.API_PREFIX}/openapi.json"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chatbots.router, prefix=settings.API_PREFIX, tags=["chatbots"])


@app.get("/")
async def root():
    return {"message": f"Welcome to {settings.PROJECT_NAME} API"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("chatflow.main:app", host="0.0.0.0", port=8000, reload=True)
