from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from . import audit, models, schemas
from .auth import hash_password, password_fingerprint, verify_password
from .errors import NotFoundError, RuleError
from .utils import escape_like, page_count, sanitize_input


def paginate(query: Query, page: int, limit: int) -> tuple[list, dict[str, int]]:
    """Slice an ordered query into one page plus the pagination envelope."""
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    return rows, {"total": total, "page": page, "pages": page_count(total, limit), "limit": limit}


def user_summary(user: Optional[models.User]) -> Optional[dict[str, Any]]:
    if user is None:
        return None
    return {"id": user.id, "username": user.username, "name": user.name, "email": user.email}


def _commit(db: Session, message: str):
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise RuleError(message) from e


# -------------------- Users --------------------

def create_user(db: Session, data: schemas.RegisterRequest, role: str = "user") -> models.User:
    taken = (
        db.query(models.User)
        .filter(or_(models.User.username == data.username, models.User.email == data.email))
        .first()
    )
    if taken:
        raise RuleError("Username or email already in use")
    user = models.User(
        username=data.username,
        email=data.email,
        name=data.name,
        password_hash=hash_password(data.password),
        role=role,
    )
    db.add(user)
    db.flush()
    audit.record(db, user.id, "register", "user", user.id)
    # unique indexes still guard against a concurrent registration
    _commit(db, "Username or email already in use")
    db.refresh(user)
    return user


def authenticate(db: Session, login: str, password: str) -> Optional[models.User]:
    user = (
        db.query(models.User)
        .filter(or_(models.User.username == login, models.User.email == login))
        .first()
    )
    if not user or not verify_password(password, user.password_hash):
        return None
    audit.record(db, user.id, "login", "user", user.id)
    db.commit()
    return user


def get_user(db: Session, user_id: int) -> models.User:
    user = db.get(models.User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email).first()


def list_users(db: Session, page: int, limit: int):
    query = db.query(models.User).order_by(models.User.created_at.desc(), models.User.id.desc())
    return paginate(query, page, limit)


def update_self(db: Session, user: models.User, data: schemas.SelfUpdate) -> models.User:
    changes: dict[str, Any] = {}
    if data.name is not None:
        user.name = changes["name"] = data.name
    if data.email is not None:
        user.email = changes["email"] = data.email
    if data.password is not None:
        if not verify_password(data.current_password, user.password_hash):
            raise RuleError("Current password is incorrect")
        user.password_hash = hash_password(data.password)
        changes["password"] = "changed"
    audit.record(db, user.id, "update_profile", "user", user.id, changes)
    _commit(db, "Email already in use")
    db.refresh(user)
    return user


def admin_update_user(db: Session, actor_id: int, user_id: int, data: schemas.AdminUserUpdate) -> models.User:
    user = get_user(db, user_id)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(user, field, value)
    audit.record(db, actor_id, "update_user", "user", user.id, changes)
    _commit(db, "Email already in use")
    db.refresh(user)
    return user


def delete_user(db: Session, actor_id: int, user_id: int, action: str = "delete_user"):
    user = get_user(db, user_id)
    db.delete(user)
    # self-deletion leaves an anonymous row; the actor no longer exists
    audit.record(db, None if actor_id == user_id else actor_id, action, "user", user_id)
    db.commit()


def reset_password(db: Session, user_id: int, fingerprint: str, password: str) -> models.User:
    user = db.get(models.User, user_id)
    # a used token no longer matches the stored hash
    if not user or password_fingerprint(user.password_hash) != fingerprint:
        raise RuleError("Invalid or expired reset token")
    user.password_hash = hash_password(password)
    audit.record(db, user.id, "reset_password", "user", user.id)
    db.commit()
    return user


def get_profile(db: Session, user_id: int) -> models.Profile:
    profile = db.query(models.Profile).filter(models.Profile.user_id == user_id).first()
    if profile is None:
        profile = models.Profile(user_id=user_id)
        db.add(profile)
        db.commit()
        db.refresh(profile)
    return profile


def update_profile(db: Session, user_id: int, data: schemas.ProfileUpdate) -> models.Profile:
    profile = get_profile(db, user_id)
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(profile, field, value)
    audit.record(db, user_id, "update_profile_details", "profile", profile.id, changes)
    db.commit()
    db.refresh(profile)
    return profile


# -------------------- Categories --------------------

def list_categories(db: Session) -> list[models.Category]:
    return db.query(models.Category).order_by(models.Category.name).all()


def get_category(db: Session, category_id: int) -> models.Category:
    category = db.get(models.Category, category_id)
    if not category:
        raise NotFoundError("Category not found")
    return category


def create_category(db: Session, actor_id: int, data: schemas.CategoryCreate) -> models.Category:
    category = models.Category(**data.model_dump())
    db.add(category)
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        raise RuleError("Category name already exists") from e
    audit.record(db, actor_id, "create_category", "category", category.id, {"name": category.name})
    db.commit()
    db.refresh(category)
    return category


def update_category(db: Session, actor_id: int, category_id: int, data: schemas.CategoryUpdate) -> models.Category:
    category = get_category(db, category_id)
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(category, field, value)
    audit.record(db, actor_id, "update_category", "category", category.id, changes)
    _commit(db, "Category name already exists")
    db.refresh(category)
    return category


def delete_category(db: Session, actor_id: int, category_id: int):
    category = get_category(db, category_id)
    db.delete(category)
    audit.record(db, actor_id, "delete_category", "category", category_id)
    db.commit()


# -------------------- Products --------------------

def list_products(
    db: Session,
    page: int,
    limit: int,
    q: Optional[str] = None,
    category_id: Optional[int] = None,
    available: Optional[bool] = None,
):
    query = db.query(models.Product)
    term = sanitize_input(q)
    if term:
        # parameterized LIKE; wildcards in the term are matched literally
        query = query.filter(models.Product.name.like(f"%{escape_like(term)}%", escape="\\"))
    if category_id is not None:
        query = query.filter(models.Product.category_id == category_id)
    if available is not None:
        query = query.filter(models.Product.is_available.is_(available))
    query = query.order_by(models.Product.created_at.desc(), models.Product.id.desc())
    return paginate(query, page, limit)


def get_product(db: Session, product_id: int) -> models.Product:
    product = db.get(models.Product, product_id)
    if not product:
        raise NotFoundError("Product not found")
    return product


def _check_category(db: Session, category_id: Optional[int]):
    if category_id is not None and db.get(models.Category, category_id) is None:
        raise NotFoundError("Category not found")


def create_product(db: Session, actor_id: int, data: schemas.ProductCreate) -> models.Product:
    _check_category(db, data.category_id)
    product = models.Product(**data.model_dump())
    db.add(product)
    db.flush()
    audit.record(db, actor_id, "create_product", "product", product.id, {"name": product.name})
    db.commit()
    db.refresh(product)
    return product


def update_product(db: Session, actor_id: int, product_id: int, data: schemas.ProductUpdate) -> models.Product:
    product = get_product(db, product_id)
    changes = data.model_dump(exclude_unset=True)
    _check_category(db, changes.get("category_id"))
    for field, value in changes.items():
        setattr(product, field, value)
    audit.record(db, actor_id, "update_product", "product", product.id, _jsonable(changes))
    db.commit()
    db.refresh(product)
    return product


def delete_product(db: Session, actor_id: int, product_id: int):
    product = get_product(db, product_id)
    db.delete(product)
    audit.record(db, actor_id, "delete_product", "product", product_id)
    db.commit()


def _jsonable(changes: dict[str, Any]) -> dict[str, Any]:
    # JSON columns cannot hold Decimal
    return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in changes.items()}


# -------------------- Addresses --------------------

def list_addresses(db: Session, user_id: int) -> list[models.Address]:
    return (
        db.query(models.Address)
        .filter(models.Address.user_id == user_id)
        .order_by(models.Address.id.desc())
        .all()
    )


def get_address(db: Session, user_id: int, address_id: int) -> models.Address:
    address = (
        db.query(models.Address)
        .filter(models.Address.id == address_id, models.Address.user_id == user_id)
        .first()
    )
    if not address:
        raise NotFoundError("Address not found")
    return address


def add_address(db: Session, user_id: int, data: schemas.AddressCreate) -> models.Address:
    """Stage a new address row without committing."""
    address = models.Address(user_id=user_id, **data.model_dump())
    db.add(address)
    db.flush()
    return address


def create_address(db: Session, user_id: int, data: schemas.AddressCreate) -> models.Address:
    address = add_address(db, user_id, data)
    audit.record(db, user_id, "create_address", "address", address.id)
    db.commit()
    db.refresh(address)
    return address


def update_address(db: Session, user_id: int, address_id: int, data: schemas.AddressUpdate) -> models.Address:
    address = get_address(db, user_id, address_id)
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(address, field, value)
    audit.record(db, user_id, "update_address", "address", address.id, changes)
    db.commit()
    db.refresh(address)
    return address


def delete_address(db: Session, user_id: int, address_id: int):
    address = get_address(db, user_id, address_id)
    db.delete(address)
    audit.record(db, user_id, "delete_address", "address", address_id)
    db.commit()


# -------------------- Activity log / dashboard --------------------

def _log_row(log: models.ActivityLog, user: Optional[models.User]) -> dict[str, Any]:
    return {
        "id": log.id,
        "user_id": log.user_id,
        "action": log.action,
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "details": log.details,
        "created_at": log.created_at,
        "user": user_summary(user),
    }


def list_logs(db: Session, page: int, limit: int, user_id: Optional[int] = None, action: Optional[str] = None):
    query = db.query(models.ActivityLog, models.User).outerjoin(
        models.User, models.User.id == models.ActivityLog.user_id
    )
    if user_id is not None:
        query = query.filter(models.ActivityLog.user_id == user_id)
    if action:
        query = query.filter(models.ActivityLog.action == action)
    query = query.order_by(models.ActivityLog.created_at.desc(), models.ActivityLog.id.desc())
    rows, pagination = paginate(query, page, limit)
    return [_log_row(log, user) for log, user in rows], pagination
