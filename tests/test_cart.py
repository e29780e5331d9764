import pytest

from cart import Cart, merge_carts
from errors import CrossMerchantCartError, ProductUnavailableError, ValidationError
from schemas import CartLine, ProductSnapshot


def snap(pid, merchant="m1", price=10000, name=None):
    return ProductSnapshot(id=pid, name=name or pid, unit_price=price, merchant_id=merchant,
                           merchant_name=f"Store {merchant}")


def test_add_item_accumulates_quantity_and_totals():
    cart = Cart()
    cart.add_item(snap("p1", price=15000), 1)
    cart.add_item(snap("p1", price=15000), 2)
    cart.add_item(snap("p4", price=12000))

    assert len(cart) == 2
    assert cart.merchant_id == "m1"
    assert cart.total_items == 4
    assert cart.total_price == 15000 * 3 + 12000


def test_cart_rejects_second_merchant_and_stays_unchanged():
    cart = Cart()
    cart.add_item(snap("p1"), 2)
    before = cart.lines

    with pytest.raises(CrossMerchantCartError) as exc:
        cart.add_item(snap("p2", merchant="m2"))

    assert exc.value.status_code == 409
    assert exc.value.existing_merchant == "Store m1"
    assert cart.lines == before


def test_add_item_requires_positive_quantity():
    cart = Cart()
    with pytest.raises(ValidationError):
        cart.add_item(snap("p1"), 0)
    assert len(cart) == 0


def test_update_quantity_to_zero_removes_line():
    cart = Cart([CartLine(product=snap("p1"), quantity=3)])
    cart.update_quantity("p1", 5)
    assert cart.total_items == 5

    cart.update_quantity("p1", 0)
    assert len(cart) == 0
    assert cart.merchant_id is None


def test_remove_unknown_item_is_noop():
    cart = Cart([CartLine(product=snap("p1"), quantity=1)])
    cart.remove_item("nope")
    assert len(cart) == 1


def test_emptied_cart_accepts_another_merchant():
    cart = Cart([CartLine(product=snap("p1"), quantity=1)])
    cart.clear()
    cart.add_item(snap("p2", merchant="m2"))
    assert cart.merchant_id == "m2"


def test_merge_prefers_local_lines():
    local = [CartLine(product=snap("p1"), quantity=1)]
    remote = [CartLine(product=snap("p1"), quantity=7), CartLine(product=snap("p4"), quantity=2)]

    merged = merge_carts(local, remote)

    assert [(line.product.id, line.quantity) for line in merged] == [("p1", 1), ("p4", 2)]


def test_merge_drops_remote_lines_from_other_merchant():
    local = [CartLine(product=snap("p1"), quantity=1)]
    remote = [CartLine(product=snap("p2", merchant="m2"), quantity=1)]

    merged = merge_carts(local, remote)

    assert [line.product.id for line in merged] == ["p1"]


def test_merge_with_empty_local_adopts_remote():
    remote = [CartLine(product=snap("p2", merchant="m2"), quantity=4)]
    assert merge_carts([], remote) == remote


# --- HTTP ---

def test_cart_roundtrip_over_http(client):
    r = client.post("/carts/u1/items", json={"product_id": "p1", "quantity": 2})
    assert r.status_code == 200
    body = r.json()
    assert body["merchant_id"] == "m1"
    assert body["total_items"] == 2
    assert body["total_price"] == 30000
    assert body["items"][0]["product"]["name"] == "Ayam Bakar"

    r = client.patch("/carts/u1/items/p1", json={"quantity": 1})
    assert r.json()["total_price"] == 15000

    r = client.get("/carts/u1")
    assert r.json()["total_items"] == 1

    r = client.delete("/carts/u1/items/p1")
    assert r.json()["items"] == []


def test_cross_merchant_add_over_http_is_409(client):
    client.post("/carts/u1/items", json={"product_id": "p1"})

    r = client.post("/carts/u1/items", json={"product_id": "p2"})

    assert r.status_code == 409
    assert "Warung Harits" in r.json()["detail"]
    assert [i["product"]["id"] for i in client.get("/carts/u1").json()["items"]] == ["p1"]


def test_unknown_product_is_404(client):
    r = client.post("/carts/u1/items", json={"product_id": "missing"})
    assert r.status_code == 404


def test_attach_merges_local_cart_into_remote(client, services):
    services.carts.add("u1", "p4", 2)
    local = [{"product": {"id": "p1", "name": "Ayam Bakar", "unit_price": 15000, "merchant_id": "m1"},
              "quantity": 1}]

    r = client.post("/carts/u1/attach", json={"items": local})

    assert r.status_code == 200
    assert {(i["product"]["id"], i["quantity"]) for i in r.json()["items"]} == {("p1", 1), ("p4", 2)}
    assert services.carts.get("u1").total_items == 3


def test_clear_cart(client, services):
    services.carts.add("u1", "p1", 1)
    assert client.delete("/carts/u1").json() == {"cleared": True}
    assert len(services.carts.get("u1")) == 0


def test_attach_rejects_local_lines_from_two_merchants(client, services):
    local = [
        {"product": {"id": "p1", "name": "Ayam Bakar", "unit_price": 15000, "merchant_id": "m1"}, "quantity": 1},
        {"product": {"id": "p2", "name": "Kopi Susu", "unit_price": 18000, "merchant_id": "m2"}, "quantity": 1},
    ]

    r = client.post("/carts/u1/attach", json={"items": local})

    assert r.status_code == 409
    assert len(services.carts.get("u1")) == 0


def test_attach_folds_repeated_local_lines(services):
    p1 = snap("p1", price=15000)
    cart = services.carts.attach("u1", [CartLine(product=p1, quantity=1), CartLine(product=p1, quantity=2)])

    assert [(line.product.id, line.quantity) for line in cart.lines] == [("p1", 3)]
    assert [(line.product.id, line.quantity) for line in services.carts.get("u1").lines] == [("p1", 3)]


@pytest.mark.parametrize("product_id, quantity", [
    ("p3", 2),  # out of stock
    ("p5", 1),  # hidden from the marketplace
    ("p4", 4),  # only 3 left
])
def test_unavailable_products_cannot_be_added(client, services, product_id, quantity):
    r = client.post("/carts/u1/items", json={"product_id": product_id, "quantity": quantity})

    assert r.status_code == 409
    assert len(services.carts.get("u1")) == 0


def test_stock_counts_quantity_already_in_cart(services):
    services.carts.add("u1", "p4", 2)
    with pytest.raises(ProductUnavailableError):
        services.carts.add("u1", "p4", 2)
    assert services.carts.get("u1").total_items == 2


def test_inactive_product_cannot_be_added(services, catalog_data):
    catalog_data["products"].update_one({"_id": "p1"}, {"$set": {"isActive": False}})
    with pytest.raises(ProductUnavailableError):
        services.carts.add("u1", "p1", 1)


def test_save_changes_cart_revision(services):
    services.carts.add("u1", "p1", 1)
    first = services.carts.document("u1").revision
    services.carts.add("u1", "p1", 1)
    assert services.carts.document("u1").revision not in (None, first)
