import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Annotated, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import admin, crud, models, orders, schemas
from .auth import create_access_token, create_reset_token, decode_reset_token, get_current_user, require_admin
from .config import configure_logging, settings
from .db import Base, SessionLocal, engine, get_db
from .errors import NotFoundError, RuleError

log = logging.getLogger(__name__)

# Create tables if not existing. Index changes on old databases go through migration/.
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if settings.admin_username and settings.admin_email and settings.admin_password:
        db = SessionLocal()
        try:
            if admin.bootstrap_admin(db, settings.admin_username, settings.admin_email, settings.admin_password):
                log.info("created bootstrap admin %s", settings.admin_username)
        finally:
            db.close()
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.cors_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Product images
os.makedirs(settings.upload_dir, exist_ok=True)
app.mount(settings.static_prefix, StaticFiles(directory=settings.upload_dir), name="images")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - start) * 1000
    log.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed)
    return response


# -------------------- Error responses --------------------

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})


@app.exception_handler(NotFoundError)
async def not_found_error(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"message": str(exc)})


@app.exception_handler(RuleError)
async def rule_error(request: Request, exc: RuleError):
    return JSONResponse(status_code=400, content={"message": str(exc)})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Something went wrong!"})


MAX_PAGE = 1_000_000
RowId = Annotated[int, Path(ge=1, le=schemas.MAX_INT)]


def page_params(page: int = Query(1, ge=1, le=MAX_PAGE), limit: int = Query(10, ge=1, le=100)) -> tuple[int, int]:
    return page, limit


@app.get("/")
def root():
    return {"message": "E-commerce API"}


@app.get("/health")
def health():
    return {"status": "ok"}


# -------------------- Auth --------------------

def _token_response(user: models.User) -> dict:
    return {
        "access_token": create_access_token(user.id, user.role),
        "token_type": "bearer",
        "user": schemas.UserRead.model_validate(user),
    }


@app.post("/api/auth/register", response_model=schemas.TokenResponse, status_code=201)
def register(payload: schemas.RegisterRequest, db: Session = Depends(get_db)):
    user = crud.create_user(db, payload)
    return _token_response(user)


@app.post("/api/auth/login", response_model=schemas.TokenResponse)
def login(payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    user = crud.authenticate(db, payload.login, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _token_response(user)


@app.post("/api/auth/forgot-password")
def forgot_password(payload: schemas.ForgotPasswordRequest, db: Session = Depends(get_db)):
    user = crud.get_user_by_email(db, payload.email)
    if user:
        token = create_reset_token(user.id, user.password_hash)
        # no mailer; the token is handed to whoever delivers it from the log
        log.info("password reset token for user %s: %s", user.id, token)
    return {"message": "If the email is registered, a reset link has been sent"}


@app.post("/api/auth/reset-password")
def reset_password(payload: schemas.ResetPasswordRequest, db: Session = Depends(get_db)):
    user_id, fingerprint = decode_reset_token(payload.token)
    crud.reset_password(db, user_id, fingerprint, payload.password)
    return {"message": "Password has been reset"}


# -------------------- Users (self service) --------------------

@app.get("/api/users/me", response_model=schemas.UserRead)
def read_me(user: models.User = Depends(get_current_user)):
    return user


@app.put("/api/users/me")
def update_me(payload: schemas.SelfUpdate, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    updated = crud.update_self(db, user, payload)
    return {"message": "Profile updated successfully", "user": schemas.UserRead.model_validate(updated)}


@app.delete("/api/users/me")
def delete_me(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    crud.delete_user(db, user.id, user.id, action="delete_account")
    return {"message": "Account deleted successfully"}


@app.get("/api/users/me/profile", response_model=schemas.ProfileRead)
def read_profile(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.get_profile(db, user.id)


@app.put("/api/users/me/profile", response_model=schemas.ProfileRead)
def update_profile(payload: schemas.ProfileUpdate, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.update_profile(db, user.id, payload)


# -------------------- Catalog --------------------

@app.get("/api/products", response_model=schemas.ProductPage)
def list_products(
    q: Optional[str] = Query(None, max_length=100),
    category_id: Optional[int] = Query(None, ge=1, le=schemas.MAX_INT),
    available: Optional[bool] = Query(None),
    paging: tuple[int, int] = Depends(page_params),
    db: Session = Depends(get_db),
):
    rows, pagination = crud.list_products(db, *paging, q=q, category_id=category_id, available=available)
    return {"products": rows, "pagination": pagination}


@app.get("/api/products/{product_id}", response_model=schemas.ProductRead)
def get_product(product_id: RowId, db: Session = Depends(get_db)):
    return crud.get_product(db, product_id)


@app.post("/api/products", status_code=201)
@app.post("/api/admin/products", status_code=201)
def create_product(payload: schemas.ProductCreate, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    product = crud.create_product(db, actor.id, payload)
    return {"message": "Product created successfully", "product": schemas.ProductRead.model_validate(product)}


@app.put("/api/products/{product_id}")
@app.put("/api/admin/products/{product_id}")
def update_product(product_id: RowId, payload: schemas.ProductUpdate, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    product = crud.update_product(db, actor.id, product_id, payload)
    return {"message": "Product updated successfully", "product": schemas.ProductRead.model_validate(product)}


@app.delete("/api/products/{product_id}")
@app.delete("/api/admin/products/{product_id}")
def delete_product(product_id: RowId, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    crud.delete_product(db, actor.id, product_id)
    return {"message": "Product deleted successfully"}


@app.get("/api/categories", response_model=List[schemas.CategoryRead])
def list_categories(db: Session = Depends(get_db)):
    return crud.list_categories(db)


@app.get("/api/categories/{category_id}", response_model=schemas.CategoryRead)
def get_category(category_id: RowId, db: Session = Depends(get_db)):
    return crud.get_category(db, category_id)


@app.post("/api/categories", status_code=201)
@app.post("/api/admin/categories", status_code=201)
def create_category(payload: schemas.CategoryCreate, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    category = crud.create_category(db, actor.id, payload)
    return {"message": "Category created successfully", "category": schemas.CategoryRead.model_validate(category)}


@app.put("/api/categories/{category_id}")
@app.put("/api/admin/categories/{category_id}")
def update_category(category_id: RowId, payload: schemas.CategoryUpdate, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    category = crud.update_category(db, actor.id, category_id, payload)
    return {"message": "Category updated successfully", "category": schemas.CategoryRead.model_validate(category)}


@app.delete("/api/categories/{category_id}")
@app.delete("/api/admin/categories/{category_id}")
def delete_category(category_id: RowId, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    crud.delete_category(db, actor.id, category_id)
    return {"message": "Category deleted successfully"}


# -------------------- Cart --------------------

@app.get("/api/cart", response_model=schemas.CartRead)
def get_cart(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return orders.get_cart(db, user.id)


@app.post("/api/cart")
def add_to_cart(payload: schemas.CartAdd, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    item = orders.add_to_cart(db, user.id, payload.product_id, payload.quantity)
    return {"message": "Item added to cart", "cart_item": schemas.CartItemRead.model_validate(item)}


@app.delete("/api/cart")
def clear_cart(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    orders.clear_cart(db, user.id)
    return {"message": "Cart cleared successfully"}


@app.put("/api/cart/{item_id}")
def update_cart_item(item_id: RowId, payload: schemas.CartQuantity, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    item = orders.update_cart_item(db, user.id, item_id, payload.quantity)
    return {"message": "Cart item updated", "cart_item": schemas.CartItemRead.model_validate(item)}


@app.delete("/api/cart/{item_id}")
def remove_cart_item(item_id: RowId, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    orders.remove_cart_item(db, user.id, item_id)
    return {"message": "Item removed from cart"}


# -------------------- Addresses --------------------

@app.get("/api/addresses", response_model=List[schemas.AddressRead])
def list_addresses(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.list_addresses(db, user.id)


@app.post("/api/addresses", response_model=schemas.AddressRead, status_code=201)
def create_address(payload: schemas.AddressCreate, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.create_address(db, user.id, payload)


@app.get("/api/addresses/{address_id}", response_model=schemas.AddressRead)
def get_address(address_id: RowId, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.get_address(db, user.id, address_id)


@app.put("/api/addresses/{address_id}", response_model=schemas.AddressRead)
def update_address(address_id: RowId, payload: schemas.AddressUpdate, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.update_address(db, user.id, address_id, payload)


@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: RowId, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    crud.delete_address(db, user.id, address_id)
    return {"message": "Address deleted successfully"}


# -------------------- Orders --------------------

@app.get("/api/orders/my-orders", response_model=List[schemas.OrderDetail])
def my_orders(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return orders.list_user_orders(db, user.id)


@app.get("/api/orders", response_model=schemas.OrderPage)
@app.get("/api/admin/orders", response_model=schemas.OrderPage)
def all_orders(
    status: Optional[schemas.OrderStatus] = Query(None),
    paging: tuple[int, int] = Depends(page_params),
    actor: models.User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    rows, pagination = orders.list_orders(db, *paging, status=status)
    return {"orders": rows, "pagination": pagination}


@app.post("/api/orders", status_code=201)
def create_order(payload: schemas.OrderCreate, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    order = orders.create_order(db, user.id, payload)
    return {"message": "Order created successfully", "order": schemas.OrderDetail.model_validate(order)}


@app.get("/api/orders/{order_id}", response_model=schemas.OrderDetail)
def get_my_order(order_id: RowId, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return orders.get_order(db, order_id, user_id=user.id)


@app.put("/api/orders/{order_id}/status")
@app.put("/api/admin/orders/{order_id}/status")
def update_order_status(order_id: RowId, payload: schemas.OrderStatusUpdate, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    order = orders.update_order_status(db, actor.id, order_id, payload.status)
    return {"message": "Order status updated successfully", "order": schemas.OrderWithUser.model_validate(order)}


# -------------------- Admin --------------------

@app.get("/api/admin/dashboard", response_model=schemas.Dashboard)
def dashboard(actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    return admin.dashboard(db)


@app.get("/api/admin/users", response_model=schemas.UserPage)
def admin_list_users(paging: tuple[int, int] = Depends(page_params), actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    rows, pagination = crud.list_users(db, *paging)
    return {"users": rows, "pagination": pagination}


@app.get("/api/admin/users/{user_id}", response_model=schemas.UserRead)
def admin_get_user(user_id: RowId, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    return crud.get_user(db, user_id)


@app.put("/api/admin/users/{user_id}")
def admin_update_user(user_id: RowId, payload: schemas.AdminUserUpdate, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    user = crud.admin_update_user(db, actor.id, user_id, payload)
    return {"message": "User updated successfully", "user": schemas.UserRead.model_validate(user)}


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: RowId, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    crud.delete_user(db, actor.id, user_id)
    return {"message": "User deleted successfully"}


@app.get("/api/admin/orders/{order_id}", response_model=schemas.OrderDetail)
def admin_get_order(order_id: RowId, actor: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    return orders.get_order(db, order_id)


@app.get("/api/admin/logs", response_model=schemas.LogPage)
def admin_logs(
    user_id: Optional[int] = Query(None, ge=1, le=schemas.MAX_INT),
    action: Optional[str] = Query(None, max_length=50),
    paging: tuple[int, int] = Depends(page_params),
    actor: models.User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    rows, pagination = crud.list_logs(db, *paging, user_id=user_id, action=action)
    return {"logs": rows, "pagination": pagination}
