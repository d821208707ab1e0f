"""FastAPI application."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import settings
from .domain_errors import DomainError
from .problem_details import domain_error_handler
from .routers import otp, voucher_orders

# Create app
app = FastAPI(
    title="ImmunoPass",
    version="1.0.0",
    description="OTP login and voucher order API"
)

if settings.ENV.lower() == "production" and settings.JWT_SECRET_KEY == "change-me":
    raise RuntimeError("JWT_SECRET_KEY must be set in production.")
if settings.ENV.lower() == "production" and any(origin.strip() == "*" for origin in settings.cors_origins):
    raise RuntimeError("ALLOWED_ORIGINS must be explicit in production (no wildcard).")

# CORS
cors_headers = ["Authorization", "Content-Type"]
if settings.ENV.lower() != "production":
    cors_headers = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=cors_headers,
)

app.add_exception_handler(DomainError, domain_error_handler)

# Include routers
app.include_router(otp.router, prefix="/api/v1")
app.include_router(voucher_orders.router, prefix="/api/v1")


@app.get("/api/v1/system/health")
def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": "1.0.0",
    }


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": "ImmunoPass API",
        "version": "1.0.0",
        "docs": "/docs"
    }
