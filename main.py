import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import database
from chats import router as chats_router
from orders import router as orders_router
from products import router as products_router
from reviews import router as reviews_router
from users import router as users_router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class CamelJSONResponse(JSONResponse):
    def render(self, content) -> bytes:
        return super().render(database.camelize(content))


app = FastAPI(title="Storefront API", version="1.0.0", default_response_class=CamelJSONResponse)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders_router)
app.include_router(reviews_router)
app.include_router(users_router)
app.include_router(products_router)
app.include_router(chats_router)


# --------- Error handlers ---------

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return JSONResponse(status_code=400, content={"message": "Invalid request"})
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    return JSONResponse(status_code=400, content={"message": message})


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# --------- Basic Routes ---------

@app.get("/")
def root():
    return {"message": "Storefront API running", "cod": True}


@app.get("/test")
def check_database():
    """Report whether MongoDB is configured and reachable."""
    status = {"backend": "running", "database": "not configured", "database_name": None, "collections": []}
    if database.db is None:
        return status
    status["database_name"] = database.db.name
    try:
        status["collections"] = sorted(database.db.list_collection_names())
    except PyMongoError as e:
        logger.warning("Database check failed: %s", e)
        status["database"] = "unreachable"
        return status
    status["database"] = "connected"
    return status


# Health
@app.get("/health")
def health():
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
