import os
import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from db.init import init_db
from dotenv import load_dotenv

load_dotenv()

from routers import subscription, package, permission, webhook
from fastapi.middleware.cors import CORSMiddleware
from utils.responses import error_response

logger = logging.getLogger(__name__)

origins = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if origin.strip()
]


app = FastAPI(title="Compliance Tracker Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,          # cannot be ["*"] if allow_credentials=True
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def startup():
    init_db(seed=os.getenv("SEED_DEFAULT_PACKAGES", "true").lower() == "true")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return error_response(exc.detail, exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        field = err["loc"][-1] if err.get("loc") else "request"
        messages.append(f"{field}: {err['msg']}")
    return error_response("; ".join(messages), 400)


@app.get("/health")
def health_check():
    return {"status": "ok"}

# Routers
app.include_router(subscription.router, prefix="/subscriptions", tags=["Subscriptions"])
app.include_router(package.router, prefix="/packages", tags=["Packages"])
app.include_router(permission.router, prefix="/permissions", tags=["Permissions"])
app.include_router(webhook.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
def root():
    return {"message": "Compliance Tracker Backend running successfully"}
