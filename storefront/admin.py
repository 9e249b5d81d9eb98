from decimal import Decimal
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import crud, models, orders, schemas


def dashboard(db: Session) -> dict[str, Any]:
    """Counts, revenue and the latest orders/activity, recomputed on every call."""
    revenue = db.query(func.coalesce(func.sum(models.Order.total_amount), 0)).scalar()
    recent_orders, _ = orders.list_orders(db, page=1, limit=5)
    recent_activities, _ = crud.list_logs(db, page=1, limit=10)
    return {
        "stats": {
            "total_users": db.query(models.User).count(),
            "total_orders": db.query(models.Order).count(),
            "total_products": db.query(models.Product).count(),
            "total_revenue": Decimal(str(revenue or 0)),
        },
        "recent_orders": recent_orders,
        "recent_activities": recent_activities,
    }


def bootstrap_admin(db: Session, username: str, email: str, password: str) -> bool:
    """Create the first admin account unless one already exists."""
    if db.query(models.User).filter(models.User.role == "admin").first():
        return False
    crud.create_user(db, schemas.RegisterRequest(username=username, email=email, password=password), role="admin")
    return True
