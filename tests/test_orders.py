from datetime import timedelta
from io import BytesIO

import pytest
from bson import ObjectId
from fastapi import HTTPException
from openpyxl import load_workbook

import orders
from database import utcnow
from factories import make_order, make_product, order_payload
from schemas import OrderItem


def stock_of(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]


class TestCreateOrder:
    def test_create_cod_order_decrements_stock(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db)

        res = client.post("/orders", json=order_payload(regular_user.id, product_id))

        assert res.status_code == 200
        body = res.json()
        assert body["receiverName"] == "Alice"
        assert body["status"] == "pending"
        assert body["paymentCheck"] is False
        assert body["totalAmount"] == 200000
        assert stock_of(db, product_id) == 8

    def test_not_enough_stock(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db, "Limited Product", 50000, stock=1)

        res = client.post("/orders", json=order_payload(regular_user.id, product_id, quantity=2, price=50000))

        assert res.status_code == 400
        assert res.json()["message"] == "Not enough stock"
        assert stock_of(db, product_id) == 1

    def test_unknown_product(self, client, login, regular_user):
        login(regular_user)
        res = client.post("/orders", json=order_payload(regular_user.id, ObjectId(), quantity=1))
        assert res.status_code == 404
        assert res.json()["message"] == "Product not found"

    def test_non_cod_payment_rejected(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db, "Stripe Product", 120000)
        payload = order_payload(regular_user.id, product_id, quantity=1, price=120000, payment_method="Stripe")

        res = client.post("/orders", json=payload)

        assert res.status_code == 400
        assert res.json()["message"] == "Other function are not supported"
        assert stock_of(db, product_id) == 10

    def test_anonymous_request(self, client, login, regular_user):
        login(None)
        payload = order_payload(regular_user.id, ObjectId(), products=[], total_amount=0, shipping_address="Nowhere")
        res = client.post("/orders", json=payload)
        assert res.status_code == 401
        assert res.json()["message"] == "You are not logged in"

    def test_cannot_order_for_another_user(self, client, db, login, regular_user, stranger_id):
        login(regular_user)
        product_id = make_product(db)
        res = client.post("/orders", json=order_payload(stranger_id, product_id, quantity=1))
        assert res.status_code == 403
        assert res.json()["message"] == "You cannot create an order for another user"

    @pytest.mark.parametrize("overrides, message", [
        ({"receiver_phone": "01234"}, "Invalid phone number length"),
        ({"receiver_phone": "01234ABC89"}, "Phone number contains digital numbers only"),
        ({"receiver_phone": "012345678\u00b2"}, "Phone number contains digital numbers only"),
        ({"receiver_phone": "\u0660\u0661\u0662\u0663\u0664\u0665\u0666\u0667\u0668\u0669"}, "Phone number contains digital numbers only"),
        ({"receiver_name": ""}, "Receiver name is required"),
        ({"receiver_name": "   "}, "Receiver name is required"),
        ({"shipping_address": ""}, "Shipping address is required"),
        ({"shipping_address": "123"}, "Shipping address is too short (min 10 characters)"),
        ({"receiver_note": "A" * 501}, "Receiver note is too long (max 500 characters)"),
        ({"products": [], "total_amount": 0}, "Products array cannot be empty"),
        ({"total_amount": 150000}, "Total amount does not match product prices"),
    ])
    def test_validation_messages(self, client, db, login, regular_user, overrides, message):
        login(regular_user)
        product_id = make_product(db)

        res = client.post("/orders", json=order_payload(regular_user.id, product_id, **overrides))

        assert res.status_code == 400
        assert res.json()["message"] == message
        assert stock_of(db, product_id) == 10

    def test_negative_quantity(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db)
        payload = order_payload(regular_user.id, product_id, quantity=-1, total_amount=100000)

        res = client.post("/orders", json=payload)

        assert res.status_code == 400
        assert res.json()["message"] == "Product quantity must be positive"

    def test_first_violation_wins(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db)
        payload = order_payload(regular_user.id, product_id, receiver_name="", receiver_phone="1")

        res = client.post("/orders", json=payload)

        assert res.json()["message"] == "Receiver name is required"

    def test_total_is_checked_against_catalogue_price(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db, price=100000)
        # client claims a cheaper unit price and a matching total
        payload = order_payload(regular_user.id, product_id, quantity=1, price=1)

        res = client.post("/orders", json=payload)

        assert res.status_code == 400
        assert res.json()["message"] == "Total amount does not match product prices"

    def test_large_quantity_within_stock(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db, "Bulk Product", 1000, stock=10000)

        res = client.post("/orders", json=order_payload(regular_user.id, product_id, quantity=9999, price=1000))

        assert res.status_code == 200
        assert stock_of(db, product_id) == 1

    def test_many_products(self, client, db, login, regular_user):
        login(regular_user)
        items = []
        for i in range(10):
            pid = make_product(db, f"Multi Product {i}", 10000 * (i + 1), stock=20)
            items.append({"product_id": pid, "name": f"Multi Product {i}", "quantity": i + 1, "price": 10000 * (i + 1)})
        total = sum(item["price"] * item["quantity"] for item in items)

        res = client.post("/orders", json=order_payload(regular_user.id, items[0]["product_id"],
                                                        products=items, total_amount=total))

        assert res.status_code == 200
        assert len(res.json()["products"]) == 10
        assert res.json()["totalAmount"] == total

    def test_same_product_twice_counts_against_stock_once(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db, stock=3)
        item = {"product_id": product_id, "name": "Test Product", "quantity": 2, "price": 100000}

        res = client.post("/orders", json=order_payload(regular_user.id, product_id,
                                                        products=[item, item], total_amount=400000))

        assert res.status_code == 400
        assert res.json()["message"] == "Not enough stock"

    def test_snapshot_uses_catalogue_name(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db, "Real Name")

        res = client.post("/orders", json=order_payload(regular_user.id, product_id, quantity=1))

        assert res.json()["products"][0]["name"] == "Real Name"
        db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"name": "Renamed", "price": 1}})
        order = db["order"].find_one({"_id": ObjectId(res.json()["id"])})
        assert order["products"][0]["name"] == "Real Name"
        assert order["products"][0]["price"] == 100000

    def test_camel_case_body_and_response(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db)
        payload = {
            "userId": regular_user.id,
            "receiverName": "Alice",
            "receiverPhone": "0123456789",
            "receiverNote": "Ring twice",
            "products": [{"productId": product_id, "name": "Test Product", "quantity": 1, "price": 100000}],
            "totalAmount": 100000,
            "shippingAddress": "123 Main St, City, Country",
            "paymentMethod": "COD",
        }

        res = client.post("/orders", json=payload)

        assert res.status_code == 200
        body = res.json()
        assert body["receiverName"] == "Alice"
        assert body["products"][0]["productId"] == product_id
        assert body["paymentCheck"] is False
        assert "receiver_name" not in body
        stored = db["order"].find_one({"_id": ObjectId(body["id"])})
        assert stored["receiver_name"] == "Alice"
        assert stored["products"][0]["product_id"] == product_id


class TestStockReservation:
    def test_second_reservation_of_last_unit_fails(self, db):
        product_id = make_product(db, stock=1)
        item = OrderItem(product_id=product_id, name="Test Product", quantity=1, price=100000)

        orders._reserve_stock(db, [item])
        with pytest.raises(HTTPException) as exc:
            orders._reserve_stock(db, [item])

        assert exc.value.status_code == 400
        assert stock_of(db, product_id) == 0

    def test_partial_reservation_is_rolled_back(self, db):
        plenty = make_product(db, "Plenty", stock=5)
        scarce = make_product(db, "Scarce", stock=0)
        items = [
            OrderItem(product_id=plenty, name="Plenty", quantity=2, price=1),
            OrderItem(product_id=scarce, name="Scarce", quantity=1, price=1),
        ]

        with pytest.raises(HTTPException):
            orders._reserve_stock(db, items)

        assert stock_of(db, plenty) == 5
        assert stock_of(db, scarce) == 0


class TestGatewayOrder:
    def test_cod_is_rejected(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db)
        res = client.post("/orders/stripe", json=order_payload(regular_user.id, product_id, quantity=1))
        assert res.status_code == 404
        assert res.json()["message"] == "This method does not need to pay by Stripe"

    def test_gateway_order_waits_for_payment(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db)
        payload = order_payload(regular_user.id, product_id, quantity=1, payment_method="Stripe")

        res = client.post("/orders/stripe", json=payload)

        assert res.status_code == 200
        assert res.json()["paymentMethod"] == "Stripe"
        assert res.json()["paymentCheck"] is False
        assert stock_of(db, product_id) == 9


class TestCancelOrder:
    def test_cancel_pending_order(self, client, db, login, regular_user):
        login(regular_user)
        order_id = make_order(db, regular_user.id, make_product(db))

        res = client.delete(f"/orders/cancel/{regular_user.id}/{order_id}")

        assert res.status_code == 200
        assert res.json()["message"] == "Order canceled successfully"
        assert db["order"].find_one({"_id": ObjectId(order_id)}) is None

    def test_cannot_cancel_someone_elses_order(self, client, db, login, regular_user, stranger_id):
        login(regular_user)
        order_id = make_order(db, stranger_id, make_product(db))

        res = client.delete(f"/orders/cancel/{regular_user.id}/{order_id}")

        assert res.status_code == 403
        assert res.json()["message"] == "You are not authorized to cancel this order"

    def test_path_user_must_be_requester(self, client, db, login, regular_user, stranger_id):
        login(regular_user)
        order_id = make_order(db, stranger_id, make_product(db))
        res = client.delete(f"/orders/cancel/{stranger_id}/{order_id}")
        assert res.status_code == 403

    @pytest.mark.parametrize("status", ["processing", "shipped", "delivered"])
    def test_only_pending_orders_can_be_cancelled(self, client, db, login, regular_user, status):
        login(regular_user)
        order_id = make_order(db, regular_user.id, make_product(db), status=status)

        res = client.delete(f"/orders/cancel/{regular_user.id}/{order_id}")

        assert res.status_code == 400
        assert res.json()["message"] == "Order is in processing, can not be cancel!"

    def test_admin_cannot_cancel_processing_order_either(self, client, db, login, admin_user):
        login(admin_user)
        order_id = make_order(db, admin_user.id, make_product(db), status="processing")
        res = client.delete(f"/orders/cancel/{admin_user.id}/{order_id}")
        assert res.status_code == 400

    def test_cancel_missing_order(self, client, login, regular_user):
        login(regular_user)
        res = client.delete(f"/orders/cancel/{regular_user.id}/{ObjectId()}")
        assert res.status_code == 404
        assert res.json()["message"] == "Order not found"


class TestOrderRetrieval:
    def test_user_orders(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db)
        make_order(db, regular_user.id, product_id)
        make_order(db, regular_user.id, product_id)

        res = client.get(f"/orders/user/{regular_user.id}")

        assert res.status_code == 200
        assert res.json()["totalOrders"] == 2
        assert len(res.json()["orders"]) == 2

    def test_user_orders_pagination(self, client, db, login, regular_user):
        login(regular_user)
        product_id = make_product(db)
        for _ in range(15):
            make_order(db, regular_user.id, product_id)

        first = client.get(f"/orders/user/{regular_user.id}").json()
        second = client.get(f"/orders/user/{regular_user.id}?page=2").json()

        assert first["totalPages"] == 2
        assert len(first["orders"]) == 10
        assert second["currentPage"] == 2
        assert len(second["orders"]) == 5

    def test_user_without_orders(self, client, login, regular_user):
        login(regular_user)
        res = client.get(f"/orders/user/{regular_user.id}")
        assert res.status_code == 404
        assert res.json()["message"] == "No order found for this user"

    def test_other_users_orders_are_hidden(self, client, db, login, regular_user, stranger_id):
        login(regular_user)
        make_order(db, stranger_id, make_product(db))
        res = client.get(f"/orders/user/{stranger_id}")
        assert res.status_code == 401
        assert res.json()["message"] == "You are not authorized to get this user order"

    def test_admin_sees_any_users_orders(self, client, db, login, admin_user, stranger_id):
        login(admin_user)
        make_order(db, stranger_id, make_product(db))
        res = client.get(f"/orders/user/{stranger_id}")
        assert res.status_code == 200
        assert res.json()["totalOrders"] == 1

    def test_get_order_by_id(self, client, db, login, regular_user):
        login(regular_user)
        order_id = make_order(db, regular_user.id, make_product(db))

        res = client.get(f"/orders/id/{order_id}")

        assert res.status_code == 200
        assert res.json()["id"] == order_id
        assert res.json()["receiverName"] == "Test User"

    def test_get_missing_order(self, client, login, regular_user):
        login(regular_user)
        res = client.get(f"/orders/id/{ObjectId()}")
        assert res.status_code == 404
        assert res.json()["message"] == "Order not found"

    def test_stranger_cannot_read_order(self, client, db, login, regular_user, stranger_id):
        login(regular_user)
        order_id = make_order(db, stranger_id, make_product(db))
        res = client.get(f"/orders/id/{order_id}")
        assert res.status_code == 403


class TestPaymentCheck:
    def test_confirm_payment(self, client, db, login, regular_user):
        login(regular_user)
        order_id = make_order(db, regular_user.id, make_product(db), payment_method="Stripe")

        res = client.put(f"/orders/payment-check/{order_id}")

        assert res.status_code == 200
        assert res.json()["paymentCheck"] is True

    def test_missing_order(self, client, login, regular_user):
        login(regular_user)
        res = client.put(f"/orders/payment-check/{ObjectId()}")
        assert res.status_code == 404
        assert res.json()["message"] == "Order not found"


class TestAdminOrders:
    def test_list_all(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        product_id = make_product(db)
        make_order(db, regular_user.id, product_id)
        make_order(db, admin_user.id, product_id)
        make_order(db, admin_user.id, product_id, created_at=utcnow() - timedelta(days=60))

        body = client.get("/orders/all").json()

        assert body["numberOfOrder"] == 3
        assert len(body["orders"]) == 3
        assert body["todayOrder"] == 2
        assert body["lastWeekOrder"] == 2
        assert body["lastMonthOrder"] == 2

    def test_list_all_pagination(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        product_id = make_product(db)
        for _ in range(20):
            make_order(db, regular_user.id, product_id)

        res1 = client.get("/orders/all?limit=5").json()
        res2 = client.get("/orders/all?page=2&limit=10").json()

        assert res1["numberOfOrder"] == 20
        assert len(res1["orders"]) == 5
        assert res1["totalPages"] == 4
        assert res2["currentPage"] == 2
        assert len(res2["orders"]) == 10

    def test_list_all_requires_admin(self, client, login, regular_user):
        login(regular_user)
        res = client.get("/orders/all")
        assert res.status_code == 401
        assert res.json()["message"] == "You are not admin to do this action"

    def test_edit_receiver_details(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        order_id = make_order(db, regular_user.id, make_product(db))

        res = client.put(f"/orders/edit/{order_id}",
                         json={"receiver_name": "Updated User", "receiver_phone": "0987654321"})

        assert res.status_code == 200
        assert res.json()["receiverName"] == "Updated User"
        assert res.json()["receiverPhone"] == "0987654321"
        assert res.json()["status"] == "pending"

    @pytest.mark.parametrize("status, field", [
        ("processing", "processingTime"),
        ("shipped", "shippedTime"),
        ("delivered", "deliveredTime"),
    ])
    def test_status_change_stamps_time(self, client, db, login, admin_user, regular_user, status, field):
        login(admin_user)
        order_id = make_order(db, regular_user.id, make_product(db))

        res = client.put(f"/orders/edit/{order_id}", json={"status": status})

        assert res.status_code == 200
        assert res.json()["status"] == status
        assert res.json()[field] is not None

    def test_time_is_stamped_only_once(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        order_id = make_order(db, regular_user.id, make_product(db))

        first = client.put(f"/orders/edit/{order_id}", json={"status": "processing"}).json()
        client.put(f"/orders/edit/{order_id}", json={"status": "pending"})
        again = client.put(f"/orders/edit/{order_id}", json={"status": "processing"}).json()

        assert again["processingTime"] == first["processingTime"]

    def test_backward_transition_is_accepted(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        order_id = make_order(db, regular_user.id, make_product(db), status="delivered")
        res = client.put(f"/orders/edit/{order_id}", json={"status": "pending"})
        assert res.status_code == 200
        assert res.json()["status"] == "pending"

    def test_unknown_status(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        order_id = make_order(db, regular_user.id, make_product(db))
        res = client.put(f"/orders/edit/{order_id}", json={"status": "lost"})
        assert res.status_code == 400
        assert res.json()["message"] == "Invalid order status"

    def test_unlisted_stored_status_can_be_moved(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        order_id = make_order(db, regular_user.id, make_product(db))
        db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": "new"}})

        res = client.put(f"/orders/edit/{order_id}", json={"status": "processing"})

        assert res.status_code == 200
        assert res.json()["status"] == "processing"

    def test_edit_missing_order(self, client, login, admin_user):
        login(admin_user)
        res = client.put(f"/orders/edit/{ObjectId()}", json={"receiver_name": "Nobody", "status": "processing"})
        assert res.status_code == 404
        assert res.json()["message"] == "Order not found"

    def test_edit_requires_admin(self, client, db, login, regular_user):
        login(regular_user)
        order_id = make_order(db, regular_user.id, make_product(db))
        res = client.put(f"/orders/edit/{order_id}", json={"status": "processing"})
        assert res.status_code == 401
        assert res.json()["message"] == "You are not admin to edit this order"


class TestAnalytics:
    def test_amount_per_day(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        product_id = make_product(db)
        make_order(db, regular_user.id, product_id)
        make_order(db, admin_user.id, product_id)
        make_order(db, admin_user.id, product_id, created_at=utcnow() - timedelta(days=3))

        res = client.get("/orders/per-day")

        assert res.status_code == 200
        days = res.json()
        assert len(days) == 2
        assert days == sorted(days, key=lambda d: d["date"])
        assert days[-1]["date"] == utcnow().strftime("%Y-%m-%d")
        assert days[-1]["orderCount"] == 2
        assert days[-1]["totalAmount"] == 200000

    def test_amount_per_month(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        product_id = make_product(db)
        make_order(db, regular_user.id, product_id)
        make_order(db, admin_user.id, product_id)

        res = client.get("/orders/per-month")

        assert res.status_code == 200
        assert res.json() == [{"date": utcnow().strftime("%Y-%m"), "totalAmount": 200000, "orderCount": 2}]

    def test_status_counts(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        product_id = make_product(db)
        for status in ("pending", "processing", "shipped", "delivered", "delivered"):
            make_order(db, regular_user.id, product_id, status=status)

        res = client.get("/orders/status")

        assert res.json() == {"pending": 1, "processing": 1, "shipped": 1, "delivered": 2}

    def test_revenue(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        product_id = make_product(db)
        make_order(db, regular_user.id, product_id)
        make_order(db, admin_user.id, product_id)

        res = client.get("/orders/revenue")

        assert res.status_code == 200
        assert res.json()["totalRevenue"] == 200000
        assert res.json()["thisMonthRevenue"] == 200000

    def test_revenue_excludes_older_months_from_this_month(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        product_id = make_product(db)
        make_order(db, regular_user.id, product_id)
        make_order(db, regular_user.id, product_id, created_at=utcnow() - timedelta(days=62))

        body = client.get("/orders/revenue").json()

        assert body["totalRevenue"] == 200000
        assert body["thisMonthRevenue"] == 100000

    def test_revenue_requires_admin(self, client, login, regular_user):
        login(regular_user)
        res = client.get("/orders/revenue")
        assert res.status_code == 401
        assert res.json()["message"] == "You are not authorized to get order total revenue"

    def test_customers_rollup(self, client, db, login, admin_user, regular_user, stranger_id):
        login(admin_user)
        product_id = make_product(db)
        make_order(db, regular_user.id, product_id, price=100)
        make_order(db, regular_user.id, product_id, price=200)
        make_order(db, stranger_id, product_id, price=50)

        customers = client.get("/orders/customers").json()

        assert [c["userId"] for c in customers] == [regular_user.id, stranger_id]
        assert customers[0]["orderCount"] == 2
        assert customers[0]["totalSpent"] == 300
        assert customers[0]["lastOrderAt"] is not None

    def test_export(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        make_order(db, regular_user.id, make_product(db))

        res = client.get("/orders/export")

        assert res.status_code == 200
        assert res.headers["content-type"].startswith(
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")
        assert "orders.xlsx" in res.headers["content-disposition"]
        sheet = load_workbook(BytesIO(res.content)).active
        rows = list(sheet.iter_rows(values_only=True))
        assert rows[0][0] == "Order ID"
        assert len(rows) == 2
        assert rows[1][5] == "Test Product x1"


class TestSearch:
    def test_by_receiver_name(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        product_id = make_product(db)
        make_order(db, regular_user.id, product_id, receiver_name="Searchable User")
        make_order(db, regular_user.id, product_id)

        res = client.get("/orders/search/searchable")

        assert res.status_code == 200
        assert len(res.json()["orders"]) == 1
        assert res.json()["orders"][0]["receiverName"] == "Searchable User"

    def test_by_id(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        order_id = make_order(db, regular_user.id, make_product(db))

        res = client.get(f"/orders/search/{order_id}")

        assert len(res.json()["orders"]) == 1
        assert res.json()["orders"][0]["id"] == order_id

    def test_no_results(self, client, login, admin_user):
        login(admin_user)
        res = client.get("/orders/search/NonExistentOrder")
        assert res.status_code == 200
        assert res.json()["message"] == "No order founded"

    def test_key_is_matched_literally(self, client, db, login, admin_user, regular_user):
        login(admin_user)
        make_order(db, regular_user.id, make_product(db))

        res = client.get("/orders/search/'; DROP TABLE orders; --")
        assert res.json()["message"] == "No order founded"
        res = client.get("/orders/search/.*")
        assert res.json()["message"] == "No order founded"
        assert db["order"].count_documents({}) == 1

    def test_requires_admin(self, client, login, regular_user):
        login(regular_user)
        res = client.get("/orders/search/test")
        assert res.status_code == 401
        assert res.json()["message"] == "You are not admin to search orders"
