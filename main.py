# © [2025] EDT&Partners. Licensed under CC BY 4.0.

from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
import uvicorn

from constants import INTERNAL_SERVER_ERROR_MESSAGE
from database.db import get_db
from logging_config import setup_logging
from lti.router import router as lti_router
from routers.lti_management import router as lti_platforms_router
from startup import run_startup_tasks
from utility.exceptions import LTIError

# Configure logging first
logger = setup_logging(module_name='main')

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application lifespan...")
    db = None
    try:
        logger.info("Initializing database connection...")
        db = next(get_db())
        logger.info("Database connection established successfully")

        await run_startup_tasks(db)

    except Exception as e:
        logger.error(f"Critical error during application startup: {str(e)}")
        logger.error(f"Error type: {type(e).__name__}")
        # Re-raise the exception to prevent the application from starting with errors
        raise
    finally:
        if db:
            try:
                db.close()
                logger.debug("Database connection closed successfully")
            except Exception as e:
                logger.error(f"Error closing database connection: {str(e)}")

    logger.info("Application startup completed, yielding control...")
    yield

    logger.info("Application shutdown initiated...")

# Configure security schemes for OpenAPI/Swagger
security_schemes = {
    "Bearer": {
        "type": "http",
        "scheme": "bearer",
        "bearerFormat": "JWT",
        "description": "Enter your JWT authentication token"
    }
}

PUBLIC_PATHS = [
    "/",
    "/health",
    "/lti/login",
    "/lti/launch",
    "/lti/jwks",
    "/lti/.well-known/jwks.json",
    "/lti/.well-known/openid-configuration",
    "/lti/session/exchange",
]

app = FastAPI(
    lifespan=lifespan,
    openapi_tags=[
        {"name": "LTI", "description": "LTI 1.3 launch flow"},
        {"name": "LTI Management", "description": "LTI platform management"},
    ]
)

app.include_router(lti_router, prefix="/lti", tags=["LTI"])
app.include_router(lti_platforms_router, prefix="/lti", tags=["LTI Management"])

def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    from fastapi.openapi.utils import get_openapi
    openapi_schema = get_openapi(
        title="LTI Launch API",
        version="1.0.0",
        description="LTI 1.3 tool: OIDC launch, provisioning and roster synchronization",
        routes=app.routes,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = security_schemes

    # Only the management endpoints require a bearer token
    for path, path_item in openapi_schema["paths"].items():
        for method, operation in path_item.items():
            if method in ["get", "post", "put", "delete", "patch"]:
                if path not in PUBLIC_PATHS:
                    operation["security"] = [{"Bearer": []}]

    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add middleware for request logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    # Query strings may carry login hints, only the path is logged
    logger.info(f"Request: {request.method} {request.url.path}")
    try:
        response = await call_next(request)
        logger.info(f"Response status: {response.status_code}")
        return response
    except Exception as e:
        logger.error(f"Request failed: {str(e)}")
        raise

@app.exception_handler(LTIError)
async def lti_error_handler(request: Request, exc: LTIError):
    logger.warning(f"LTI error on {request.url.path}: {exc.status_code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

@app.get("/")
def read_root():
    return {"status": "API is up and running", "version": "1.0.0"}

@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy"}
    except Exception:
        raise HTTPException(status_code=500, detail=INTERNAL_SERVER_ERROR_MESSAGE)

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
