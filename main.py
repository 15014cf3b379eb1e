import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import catalog
import orders
from config import Settings
from database import connect, create_document, ensure_indexes, parse_object_id
from logging_config import add_context, clear_context, configure_logging
from schemas import ItemCreate, ItemUpdate, OrderCreate, OrderStatusUpdate, User, UserCreate, UserLogin
from security import (
    get_current_user,
    get_db,
    get_settings,
    hash_password,
    issue_token,
    public_user,
    require_admin,
    verify_password,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api")


def token_response(user: dict, settings: Settings) -> dict:
    return {
        "token": issue_token(str(user["_id"]), settings.secret_key, settings.token_ttl_hours),
        "user": public_user(user),
    }


# -------------------- Health --------------------

@router.get("/health")
def health(db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    try:
        db.list_collection_names()
        database = "connected"
    except PyMongoError as e:
        logger.warning("Health check could not reach database", error=str(e)[:100])
        database = "disconnected"
    return {
        "status": "OK" if database == "connected" else "DEGRADED",
        "database": database,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# -------------------- Auth --------------------

@router.post("/auth/register", status_code=201, response_model=dict)
def register(payload: UserCreate, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="User already exists")
    pw_hash, salt = hash_password(payload.password)
    user_doc = User(
        name=payload.name,
        email=payload.email,
        password_hash=pw_hash,
        salt=salt,
        role=payload.role,
    ).model_dump()
    try:
        user_id = create_document(db, "user", user_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="User already exists")
    logger.info("User registered", user_id=user_id, role=payload.role)
    user = db["user"].find_one({"_id": parse_object_id(user_id)})
    return token_response(user, settings)


@router.post("/auth/login", response_model=dict)
def login(payload: UserLogin, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("salt", ""), user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    return token_response(user, settings)


@router.get("/auth/me", response_model=dict)
def me(user: dict = Depends(get_current_user)):
    return public_user(user)


# -------------------- Items --------------------

@router.get("/items", response_model=List[dict])
def list_items(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return catalog.list_items(db, user)


@router.get("/items/low-stock", response_model=List[dict])
def low_stock_items(user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return catalog.low_stock_items(db, user)


@router.get("/items/{item_id}", response_model=dict)
def get_item(item_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return catalog.get_item(db, user, item_id)


@router.post("/items", status_code=201, response_model=dict)
def create_item(payload: ItemCreate, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return catalog.create_item(db, user, payload)


@router.put("/items/{item_id}", response_model=dict)
def update_item(item_id: str, payload: ItemUpdate, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return catalog.update_item(db, user, item_id, payload)


@router.delete("/items/{item_id}", response_model=dict)
def delete_item(item_id: str, user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return catalog.delete_item(db, user, item_id)


@router.get("/categories", response_model=List[str])
def list_categories(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return catalog.list_categories(db, user)


# -------------------- Orders --------------------

@router.post("/orders", status_code=201, response_model=dict)
def place_order(payload: OrderCreate, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = orders.OrderPlacement(db, user).place(payload)
    return {"message": "Order placed successfully", "order": order}


@router.get("/orders/my-orders", response_model=List[dict])
def my_orders(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.my_orders(db, user)


@router.get("/orders", response_model=List[dict])
def admin_orders(status: Optional[str] = Query(None), user: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return orders.admin_orders(db, user, status)


@router.get("/orders/{order_id}", response_model=dict)
def get_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.get_order(db, user, order_id)


@router.put("/orders/{order_id}/status", response_model=dict)
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    user: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    order = orders.update_status(db, user, order_id, payload.status)
    return {"message": "Order status updated", "order": order}


# -------------------- Error translation --------------------

def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    error = errors[0]
    msg = str(error.get("msg", "Invalid value"))
    if error.get("type") == "value_error":
        return msg.removeprefix("Value error, ")
    loc = [str(part) for part in error.get("loc", ()) if part != "body"]
    return f"{'.'.join(loc)}: {msg}" if loc else msg


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": _validation_message(exc)})


async def database_exception_handler(request: Request, exc: PyMongoError):
    logger.error("Database error", path=request.url.path, error=str(exc)[:200])
    return JSONResponse(status_code=500, content={"detail": "Server error"})


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", path=request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


# -------------------- App --------------------

def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.environment)
    if db is None:
        db = connect(settings)

    app = FastAPI(title="StockFlow API")
    app.state.settings = settings
    app.state.db = db

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        clear_context()
        add_context(request_id=uuid.uuid4().hex[:12])
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "Request handled",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PyMongoError, database_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.get("/")
    def read_root():
        return {"message": "StockFlow API is running"}

    app.include_router(router)

    ensure_indexes(db)
    if settings.seed_sample_data:
        catalog.seed_sample_data(db, settings.seed_admin_email, settings.seed_admin_password)
    logger.info("StockFlow API ready", database=settings.database_name, environment=settings.environment)
    return app


if __name__ == "__main__":
    import uvicorn
    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
