from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from sales.models import Order


class OrderReadTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.staff = user_model.objects.create_user(username="cashier", password="pass1234", role="staff")
        self.warehouse = user_model.objects.create_user(username="picker", password="pass1234", role="warehouse")
        self.order = Order.objects.create(order_number="SO-0001", customer_name="Walk-in", total=Decimal("45.00"))

    def test_staff_can_list_orders(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.get("/api/v1/orders/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["results"][0]["order_number"], "SO-0001")

    def test_orders_are_read_only(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.post("/api/v1/orders/", {"order_number": "SO-0002"}, format="json")

        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.json()["code"], "method_not_allowed")

    def test_warehouse_role_cannot_read_orders(self):
        self.client.force_authenticate(user=self.warehouse)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get("/api/v1/orders/")

        self.assertEqual(response.status_code, 403)

    def test_payment_status_follows_paid_amount(self):
        self.order.refresh_payment_status(Decimal("10.00"))
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PARTIAL)

        self.order.refresh_payment_status(Decimal("45.00"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)
