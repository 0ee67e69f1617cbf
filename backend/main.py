from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv
from api.auth import router as auth_router
from api.programs import router as programs_router
from api.assignments import router as assignments_router
from api.scheduling import admin_router as scheduling_admin_router
from api.scheduling import router as scheduling_router
from api.super_admin import router as super_admin_router
from api.billing import router as billing_router
from api.admin import router as admin_router
from api.patients import router as patients_router
from database.connection import engine, Base
import logging
import os
import uvicorn

load_dotenv()

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Therapy Clinic API",
    description="Multi-tenant clinic platform: programs, progress and session scheduling",
    version="1.0.0"
)

# CORS
cors_origins = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== ERROR HANDLERS ====================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    if isinstance(detail, dict):
        body = {key: value for key, value in detail.items() if key != "msg"}
        body["errors"] = [{"msg": detail.get("msg", "Request failed.")}]
    else:
        body = {"errors": [{"msg": str(detail)}]}
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"msg": error.get("msg"), "param": ".".join(loc) or None})
    return JSONResponse(status_code=400, content={"errors": errors})

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"errors": [{"msg": "Internal server error."}]})

# Include routers
app.include_router(auth_router)
app.include_router(programs_router)
app.include_router(assignments_router)
app.include_router(scheduling_admin_router)
app.include_router(scheduling_router)
app.include_router(super_admin_router)
app.include_router(billing_router)
app.include_router(admin_router)
app.include_router(patients_router)

@app.get("/")
async def root():
    return {
        "message": "Therapy Clinic API",
        "status": "running",
        "version": "1.0.0",
        "endpoints": {
            "auth": "/api/auth",
            "programs": "/api/programs",
            "assignments": "/api/assignments",
            "scheduling_admin": "/api/admin/scheduling",
            "scheduling": "/api/scheduling",
            "super_admin": "/api/super-admin",
            "billing": "/api/super-admin/billing",
            "docs": "/docs"
        }
    }

@app.get("/health")
async def health_check():
    return {"status": "healthy"}

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=True
    )
