from decimal import Decimal

from pytest import raises

from storefront import crud, models, orders, schemas
from storefront.errors import NotFoundError, UnavailableError


def place(db, user, shipping, **kw):
    data = schemas.OrderCreate(shipping_address=schemas.AddressCreate(**shipping), payment_method="credit_card", **kw)
    return orders.create_order(db, user.id, data)


def counts(db):
    return (
        db.query(models.Order).count(),
        db.query(models.OrderItem).count(),
        db.query(models.Address).count(),
    )


def test_cart_created_lazily_is_empty(db_session, user):
    cart = orders.get_cart(db_session, user.id)
    assert cart["items"] == []
    assert cart["user_id"] == user.id
    assert cart["total"] == Decimal("0.00")

    # second access reuses the same row
    again = orders.get_cart(db_session, user.id)
    assert again["id"] == cart["id"]
    assert db_session.query(models.Cart).filter(models.Cart.user_id == user.id).count() == 1


def test_add_over_stock_rejected_and_cart_unchanged(db_session, user, make_product):
    product = make_product(stock=3)
    with raises(UnavailableError):
        orders.add_to_cart(db_session, user.id, product.id, 4)
    assert orders.get_cart(db_session, user.id)["items"] == []


def test_add_unknown_or_unavailable_product(db_session, user, make_product):
    with raises(NotFoundError):
        orders.add_to_cart(db_session, user.id, 9999, 1)
    hidden = make_product(available=False)
    with raises(UnavailableError):
        orders.add_to_cart(db_session, user.id, hidden.id, 1)


def test_adding_same_product_sums_and_revalidates(db_session, user, make_product):
    product = make_product(stock=5)
    orders.add_to_cart(db_session, user.id, product.id, 2)
    item = orders.add_to_cart(db_session, user.id, product.id, 2)
    assert item.quantity == 4

    # 4 + 2 > 5 even though 2 alone would fit
    with raises(UnavailableError):
        orders.add_to_cart(db_session, user.id, product.id, 2)

    cart = orders.get_cart(db_session, user.id)
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 4


def test_cart_mutations_are_scoped_to_owner(db_session, make_user, make_product):
    owner, other = make_user(), make_user()
    product = make_product()
    item = orders.add_to_cart(db_session, owner.id, product.id, 1)

    with raises(NotFoundError):
        orders.update_cart_item(db_session, other.id, item.id, 2)
    with raises(NotFoundError):
        orders.remove_cart_item(db_session, other.id, item.id)

    assert orders.update_cart_item(db_session, owner.id, item.id, 3).quantity == 3
    with raises(UnavailableError):
        orders.update_cart_item(db_session, owner.id, item.id, 6)


def test_each_cart_mutation_records_one_log(db_session, user, make_product):
    product = make_product()
    item = orders.add_to_cart(db_session, user.id, product.id, 1)
    orders.update_cart_item(db_session, user.id, item.id, 2)
    orders.remove_cart_item(db_session, user.id, item.id)
    orders.add_to_cart(db_session, user.id, product.id, 1)
    orders.clear_cart(db_session, user.id)

    actions = [a for (a,) in db_session.query(models.ActivityLog.action).filter(models.ActivityLog.action != "register").order_by(models.ActivityLog.id)]
    assert actions == ["add_to_cart", "update_cart_item", "remove_from_cart", "add_to_cart", "clear_cart"]
    assert orders.get_cart(db_session, user.id)["items"] == []


def test_clear_without_cart_is_not_found(db_session, user):
    with raises(NotFoundError):
        orders.clear_cart(db_session, user.id)


def test_order_on_empty_cart_fails_without_writes(db_session, user, make_product, shipping):
    product = make_product(stock=5)
    with raises(ValueError, match="Cart is empty"):
        place(db_session, user, shipping)
    # an existing but empty cart behaves the same
    orders.get_cart(db_session, user.id)
    with raises(ValueError, match="Cart is empty"):
        place(db_session, user, shipping)

    assert counts(db_session) == (0, 0, 0)
    db_session.refresh(product)
    assert product.stock_quantity == 5


def test_order_totals_stock_and_cart(db_session, user, make_product, shipping):
    plain = make_product(name="Mug", price="10.00", stock=5)
    discounted = make_product(name="Lamp", price="20.00", discount="25", stock=3)
    orders.add_to_cart(db_session, user.id, plain.id, 2)
    orders.add_to_cart(db_session, user.id, discounted.id, 3)

    order = place(db_session, user, shipping, payment_details={"last4": "4242"})

    # 2 * 10 + 3 * 20 * 0.75
    assert order["total_amount"] == Decimal("65.00")
    assert order["status"] == "pending"
    assert order["payment_details"] == {"last4": "4242"}
    assert order["address"].city == "Springfield"
    assert order["user"]["id"] == user.id
    assert [(i["product_name"], i["quantity"]) for i in order["items"]] == [("Mug", 2), ("Lamp", 3)]
    assert order["items"][1]["discount"] == Decimal("25.00")

    db_session.refresh(plain)
    db_session.refresh(discounted)
    assert plain.stock_quantity == 3
    assert discounted.stock_quantity == 0
    assert orders.get_cart(db_session, user.id)["items"] == []

    logged = db_session.query(models.ActivityLog).filter(models.ActivityLog.action == "create_order").one()
    assert logged.entity_id == order["id"]


def test_order_fails_whole_when_one_line_exceeds_stock(db_session, user, admin_user, make_product, shipping):
    ok = make_product(name="Mug", stock=5)
    short = make_product(name="Lamp", stock=3)
    orders.add_to_cart(db_session, user.id, ok.id, 2)
    orders.add_to_cart(db_session, user.id, short.id, 3)
    crud.update_product(db_session, admin_user.id, short.id, schemas.ProductUpdate(stock_quantity=1))

    with raises(UnavailableError, match="Product Lamp is not available"):
        place(db_session, user, shipping)

    assert counts(db_session) == (0, 0, 0)
    db_session.refresh(ok)
    assert ok.stock_quantity == 5
    assert len(orders.get_cart(db_session, user.id)["items"]) == 2


def test_stock_race_rolls_back_everything(db_session, user, make_product, shipping, monkeypatch):
    first = make_product(name="Mug", stock=5)
    second = make_product(name="Lamp", stock=3)
    orders.add_to_cart(db_session, user.id, first.id, 2)
    orders.add_to_cart(db_session, user.id, second.id, 3)

    # Someone else bought the lamps after our availability check passed
    second.stock_quantity = 1
    db_session.commit()
    monkeypatch.setattr(orders, "check_lines", lambda lines: None)

    with raises(UnavailableError, match="Lamp"):
        place(db_session, user, shipping)

    assert counts(db_session) == (0, 0, 0)
    db_session.refresh(first)
    db_session.refresh(second)
    assert first.stock_quantity == 5
    assert second.stock_quantity == 1
    assert len(orders.get_cart(db_session, user.id)["items"]) == 2
    assert db_session.query(models.ActivityLog).filter(models.ActivityLog.action == "create_order").count() == 0


def test_order_with_saved_address(db_session, make_user, make_product, shipping):
    buyer, stranger = make_user(), make_user()
    product = make_product()
    own = crud.create_address(db_session, buyer.id, schemas.AddressCreate(**shipping))
    foreign = crud.create_address(db_session, stranger.id, schemas.AddressCreate(**shipping))
    orders.add_to_cart(db_session, buyer.id, product.id, 1)

    with raises(NotFoundError, match="Shipping address not found"):
        orders.create_order(db_session, buyer.id, schemas.OrderCreate(address_id=foreign.id, payment_method="paypal"))
    assert db_session.query(models.Order).count() == 0

    order = orders.create_order(db_session, buyer.id, schemas.OrderCreate(address_id=own.id, payment_method="paypal"))
    assert order["address_id"] == own.id
    # reused, not copied
    assert db_session.query(models.Address).filter(models.Address.user_id == buyer.id).count() == 1


def test_order_status_update(db_session, user, admin_user, make_product, shipping):
    product = make_product()
    orders.add_to_cart(db_session, user.id, product.id, 1)
    order = place(db_session, user, shipping)

    updated = orders.update_order_status(db_session, admin_user.id, order["id"], "shipped")
    assert updated["status"] == "shipped"
    with raises(ValueError):
        orders.update_order_status(db_session, admin_user.id, order["id"], "lost")
    with raises(NotFoundError):
        orders.update_order_status(db_session, admin_user.id, 9999, "shipped")

    with raises(NotFoundError):
        orders.get_order(db_session, order["id"], user_id=admin_user.id)
    assert orders.get_order(db_session, order["id"])["status"] == "shipped"
