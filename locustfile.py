from locust import HttpUser, task, between
import random

SHIPPING = {"street": "1 Load St", "city": "Testville", "zip_code": "00000", "country": "US"}


class Shopper(HttpUser):
    wait_time = between(0.1, 0.5)

    def on_start(self):
        # Register a fresh account for this simulated client
        uname = f"user_{random.randint(1, 1_000_000)}"
        r = self.client.post(
            "/api/auth/register",
            json={"username": uname, "email": f"{uname}@example.com", "password": "loadtest"},
        )
        self.headers = None
        if r.status_code == 201:
            self.headers = {"Authorization": f"Bearer {r.json()['access_token']}"}

    def _product_ids(self):
        r = self.client.get("/api/products", params={"available": "true", "limit": 50})
        if r.status_code != 200:
            return []
        return [p["id"] for p in r.json()["products"] if p["stock_quantity"] > 0]

    @task(3)
    def browse(self):
        self.client.get("/api/products", params={"page": random.randint(1, 3)})

    @task(2)
    def add_to_cart(self):
        if not self.headers:
            return
        ids = self._product_ids()
        if ids:
            self.client.post("/api/cart", json={"product_id": random.choice(ids)}, headers=self.headers)

    @task(1)
    def checkout(self):
        if not self.headers:
            return
        with self.client.post(
            "/api/orders",
            json={"shipping_address": SHIPPING, "payment_method": "credit_card"},
            headers=self.headers,
            catch_response=True,
        ) as r:
            # empty carts and sold-out items are expected under load
            if r.status_code in (201, 400):
                r.success()
