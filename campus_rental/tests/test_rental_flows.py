import unittest
from datetime import date
from unittest import mock

from sqlalchemy.exc import OperationalError

from api_support import RETURN_DATE, RentalApiTestCase
import services.rental_service as rental_service
from services.reconciliation_service import ItemSnapshot


class ApplicantFlowTests(RentalApiTestCase):
    def test_apply_reserves_stock_and_prices_application(self):
        self.seed_item("tent", 10, price=3000)
        response = self.apply([("tent", 3)])
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["status"], "Pending")
        self.assertEqual(body["items"], [{"itemId": "tent", "quantity": 3}])
        self.assertEqual(body["totalItemCost"], 9000)
        self.assertEqual(body["deposit"], 10000)
        self.assertEqual(body["totalAmount"], 19000)
        self.assertFalse(body["depositRefunded"])
        self.assertTrue(body["id"].startswith("rental-"))
        self.assertEqual(self.stock_of("tent"), 7)
        self.assert_stock_conserved()

    def test_apply_then_cancel_restores_stock(self):
        self.seed_item("tent", 10)
        self.seed_item("lamp", 4)
        created = self.apply([("tent", 3), ("lamp", 4)]).json()
        self.assertEqual(self.stock_of("lamp"), 0)

        response = self.client.post(f"/api/rentals/{created['id']}/cancel", json=self.identity())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.stock_of("tent"), 10)
        self.assertEqual(self.stock_of("lamp"), 4)
        self.assertEqual(self.application_count(), 0)

    def test_edit_from_five_to_three_returns_two(self):
        self.seed_item("tent", 10)
        created = self.apply([("tent", 5)]).json()
        self.assertEqual(self.stock_of("tent"), 5)

        payload = dict(self.identity())
        payload.update(
            {
                "rentalDate": created["rentalDate"],
                "returnDate": created["returnDate"],
                "items": [{"itemId": "tent", "quantity": 3}],
            }
        )
        response = self.client.put(f"/api/rentals/{created['id']}", json=payload)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["items"], [{"itemId": "tent", "quantity": 3}])
        self.assertEqual(self.stock_of("tent"), 7)
        self.assert_stock_conserved()

    def test_edit_can_swap_items(self):
        self.seed_item("tent", 10)
        self.seed_item("lamp", 2, price=500)
        created = self.apply([("tent", 2)]).json()

        payload = dict(self.identity())
        payload.update(
            {
                "rentalDate": created["rentalDate"],
                "returnDate": created["returnDate"],
                "items": [{"itemId": "lamp", "quantity": 2}],
            }
        )
        response = self.client.put(f"/api/rentals/{created['id']}", json=payload)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["totalItemCost"], 1000)
        self.assertEqual(self.stock_of("tent"), 10)
        self.assertEqual(self.stock_of("lamp"), 0)
        self.assert_stock_conserved()

    def test_reserving_exact_remaining_stock_succeeds_and_one_more_fails(self):
        self.seed_item("tent", 4)
        self.assertEqual(self.apply([("tent", 4)]).status_code, 201)
        self.assertEqual(self.stock_of("tent"), 0)

        response = self.apply([("tent", 1)])
        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["error"], "InsufficientStock")
        self.assertEqual(body["required"], 1)
        self.assertEqual(body["available"], 0)
        self.assertEqual(self.application_count(), 1)

    def test_failed_reservation_leaves_other_items_untouched(self):
        self.seed_item("tent", 10)
        self.seed_item("lamp", 1)
        response = self.apply([("tent", 3), ("lamp", 2)])
        self.assertEqual(response.status_code, 409)
        self.assertEqual(self.stock_of("tent"), 10)
        self.assertEqual(self.stock_of("lamp"), 1)

    def test_stale_snapshot_cannot_overdraw_stock(self):
        self.seed_item("tent", 10)
        self.assertEqual(self.apply([("tent", 6)]).status_code, 201)
        self.assertEqual(self.stock_of("tent"), 4)

        # A second request that read stock before the first one committed.
        stale = {"tent": ItemSnapshot(item_id="tent", name="tent", initial_stock=10, current_stock=10, price=1000)}
        with mock.patch.object(rental_service, "load_inventory", return_value=stale):
            response = self.apply([("tent", 6)])

        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["error"], "InsufficientStock")
        self.assertEqual(body["available"], 4)
        self.assertEqual(body["liveStock"], [{"id": "tent", "name": "tent", "currentStock": 4}])
        self.assertEqual(self.stock_of("tent"), 4)
        self.assertEqual(self.application_count(), 1)
        self.assert_stock_conserved()

    def test_stale_snapshot_cannot_push_stock_above_initial(self):
        self.seed_item("tent", 10)
        created = self.apply([("tent", 3)]).json()
        self.assertEqual(self.stock_of("tent"), 7)
        # Concurrent admin correction the cancelling request has not seen.
        fixed = self.client.put("/api/items/tent", json={"currentStock": 9}, headers=self.admin_headers())
        self.assertEqual(fixed.status_code, 200)

        stale = {"tent": ItemSnapshot(item_id="tent", name="tent", initial_stock=10, current_stock=7, price=1000)}
        with mock.patch.object(rental_service, "load_inventory", return_value=stale):
            response = self.client.post(f"/api/rentals/{created['id']}/cancel", json=self.identity())

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "InvalidTransition")
        self.assertEqual(self.stock_of("tent"), 9)
        self.assertEqual(self.application_count(), 1)

    def test_item_deleted_after_snapshot_is_not_found(self):
        self.seed_item("tent", 10)
        stale = {
            "tent": ItemSnapshot(item_id="tent", name="tent", initial_stock=10, current_stock=10, price=1000),
            "lamp": ItemSnapshot(item_id="lamp", name="lamp", initial_stock=5, current_stock=5, price=500),
        }
        with mock.patch.object(rental_service, "load_inventory", return_value=stale):
            response = self.apply([("tent", 2), ("lamp", 1)])

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "NotFound")
        self.assertEqual(self.stock_of("tent"), 10)
        self.assertEqual(self.application_count(), 0)

    def test_storage_failure_rolls_back_stock(self):
        self.seed_item("tent", 10)
        failure = OperationalError("INSERT INTO AuditLogs", {}, Exception("disk I/O error"))
        with mock.patch.object(rental_service, "log_audit", side_effect=failure):
            response = self.apply([("tent", 2)])

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"], "StorageFailure")
        self.assertEqual(self.stock_of("tent"), 10)
        self.assertEqual(self.application_count(), 0)

    def test_invalid_selections_are_rejected(self):
        self.seed_item("tent", 10)
        cases = [
            [],
            [("tent", 0)],
            [("tent", 1), ("tent", 2)],
        ]
        for items in cases:
            with self.subTest(items=items):
                response = self.apply(items)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error"], "ValidationError")
        self.assertEqual(self.stock_of("tent"), 10)

    def test_unknown_item_is_not_found(self):
        self.seed_item("tent", 10)
        response = self.apply([("ghost", 1)])
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.application_count(), 0)

    def test_return_date_before_rental_date_is_rejected(self):
        self.seed_item("tent", 10)
        response = self.apply([("tent", 1)], rentalDate="2026-05-10", returnDate="2026-05-09")
        self.assertEqual(response.status_code, 400)
        self.assertIn("returnDate", response.json()["details"])

    def test_blank_applicant_fields_are_rejected(self):
        self.seed_item("tent", 10)
        response = self.apply([("tent", 1)], applicantName="   ")
        self.assertEqual(response.status_code, 400)
        self.assertIn("applicantName", response.json()["details"])

    def test_missing_body_fields_use_request_validation(self):
        payload = self.application_payload([("tent", 1)])
        del payload["accountNumber"]
        response = self.client.post("/api/rentals/apply", json=payload)
        self.assertEqual(response.status_code, 422)

    def test_find_returns_only_matching_applications(self):
        self.seed_item("tent", 10)
        self.apply([("tent", 1)])
        self.apply([("tent", 1)], applicantName="Lee Jun", studentId="20239999")

        response = self.client.post("/api/rentals/find", json=self.identity())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()), 1)
        self.assertEqual(response.json()[0]["applicantName"], "Kim Minji")

        missing = self.client.post("/api/rentals/find", json={"name": "Kim Minji"})
        self.assertEqual(missing.status_code, 400)

    def test_identity_mismatch_hides_application(self):
        self.seed_item("tent", 10)
        created = self.apply([("tent", 2)]).json()
        wrong = dict(self.identity(), phoneNumber="010-0000-0000")

        response = self.client.post(f"/api/rentals/{created['id']}/cancel", json=wrong)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.stock_of("tent"), 8)

    def test_applicant_cannot_cancel_after_rental_started(self):
        self.seed_item("tent", 10)
        created = self.apply([("tent", 2)]).json()
        headers = self.admin_headers()
        self.client.put(f"/api/admin/rentals/{created['id']}", json={"status": "Rented"}, headers=headers)

        response = self.client.post(f"/api/rentals/{created['id']}/cancel", json=self.identity())
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "InvalidTransition")
        self.assertEqual(self.stock_of("tent"), 8)


class AdminFlowTests(RentalApiTestCase):
    def setUp(self):
        super().setUp()
        self.headers = self.admin_headers()

    def _patch(self, application_id, payload):
        return self.client.put(f"/api/admin/rentals/{application_id}", json=payload, headers=self.headers)

    def test_status_change_between_reserved_states_keeps_stock(self):
        self.seed_item("tent", 10)
        created = self.apply([("tent", 3)]).json()
        response = self._patch(created["id"], {"status": "Rented", "rentalStaff": "Park"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "Rented")
        self.assertEqual(response.json()["rentalStaff"], "Park")
        self.assertEqual(self.stock_of("tent"), 7)

    def test_returned_requires_actual_return_date(self):
        self.seed_item("tent", 10)
        created = self.apply([("tent", 3)]).json()
        response = self._patch(created["id"], {"status": "Returned"})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "InvalidTransition")
        self.assertEqual(self.stock_of("tent"), 7)

    def test_full_cycle_frees_stock_for_next_application(self):
        self.seed_item("tent", 10)
        first = self.apply([("tent", 10)]).json()
        self.assertEqual(self.apply([("tent", 1)]).status_code, 409)

        self.assertEqual(self._patch(first["id"], {"status": "Rented"}).status_code, 200)
        returned = self._patch(
            first["id"],
            {"status": "Returned", "actualReturnDate": RETURN_DATE.isoformat(), "returnStaff": "Choi", "depositRefunded": True},
        )
        self.assertEqual(returned.status_code, 200)
        self.assertTrue(returned.json()["depositRefunded"])
        self.assertEqual(self.stock_of("tent"), 10)

        self.assertEqual(self.apply([("tent", 10)]).status_code, 201)
        self.assertEqual(self.stock_of("tent"), 0)
        self.assert_stock_conserved()

    def test_reopening_returned_application_reserves_again(self):
        self.seed_item("tent", 5)
        created = self.apply([("tent", 5)]).json()
        self._patch(created["id"], {"status": "Returned", "actualReturnDate": RETURN_DATE.isoformat()})
        self.assertEqual(self.stock_of("tent"), 5)
        self.apply([("tent", 3)])

        response = self._patch(created["id"], {"status": "Pending"})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(self.stock_of("tent"), 2)

        self.assertEqual(self._patch(created["id"], {"status": "Pending", "items": [{"itemId": "tent", "quantity": 2}]}).status_code, 200)
        self.assertEqual(self.stock_of("tent"), 0)
        self.assert_stock_conserved()

    def test_status_aliases_are_normalized(self):
        self.seed_item("tent", 10)
        created = self.apply([("tent", 1)]).json()
        response = self._patch(created["id"], {"status": "대여 중"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "Rented")

        unknown = self._patch(created["id"], {"status": "Lost"})
        self.assertEqual(unknown.status_code, 400)

    def test_echoed_application_body_is_accepted(self):
        self.seed_item("tent", 10, price=2000)
        created = self.apply([("tent", 2)]).json()
        body = self.client.get(f"/api/admin/rentals/{created['id']}", headers=self.headers).json()
        body["status"] = "Rented"
        body["totalAmount"] = 1

        response = self._patch(created["id"], body)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["totalAmount"], 14000)
        self.assertEqual(self.stock_of("tent"), 8)

    def test_unknown_patch_field_is_rejected(self):
        self.seed_item("tent", 10)
        created = self.apply([("tent", 1)]).json()
        response = self._patch(created["id"], {"status": "Rented", "currentStock": 99})
        self.assertEqual(response.status_code, 400)
        self.assertIn("currentStock", response.json()["details"])
        self.assertEqual(response.json()["error"], "ValidationError")

    def test_admin_item_change_recomputes_costs(self):
        self.seed_item("tent", 10, price=1000)
        self.seed_item("lamp", 5, price=700)
        created = self.apply([("tent", 2)]).json()
        response = self._patch(
            created["id"],
            {"items": [{"itemId": "tent", "quantity": 4}, {"itemId": "lamp", "quantity": 1}]},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["totalItemCost"], 4700)
        self.assertEqual(response.json()["totalAmount"], 14700)
        self.assertEqual(self.stock_of("tent"), 6)
        self.assertEqual(self.stock_of("lamp"), 4)

    def test_admin_delete_releases_only_reserved_stock(self):
        self.seed_item("tent", 10)
        pending = self.apply([("tent", 3)]).json()
        returned = self.apply([("tent", 2)]).json()
        self._patch(returned["id"], {"status": "Returned", "actualReturnDate": RETURN_DATE.isoformat()})
        self.assertEqual(self.stock_of("tent"), 7)

        self.assertEqual(self.client.delete(f"/api/admin/rentals/{returned['id']}", headers=self.headers).status_code, 204)
        self.assertEqual(self.stock_of("tent"), 7)
        self.assertEqual(self.client.delete(f"/api/admin/rentals/{pending['id']}", headers=self.headers).status_code, 204)
        self.assertEqual(self.stock_of("tent"), 10)
        self.assertEqual(self.client.get(f"/api/admin/rentals/{pending['id']}", headers=self.headers).status_code, 404)

    def test_list_applications(self):
        self.seed_item("tent", 10)
        self.apply([("tent", 1)])
        self.apply([("tent", 2)])
        response = self.client.get("/api/admin/rentals", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()), 2)

    def test_dashboard_stats(self):
        self.seed_item("tent", 10)
        self.seed_item("lamp", 3)
        self.apply([("tent", 2)])
        today = date.today().isoformat()
        due = self.apply([("tent", 1)], rentalDate=today, returnDate=today).json()
        self._patch(due["id"], {"status": "Rented"})

        response = self.client.get("/api/admin/dashboard/stats", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {"newRequests": 1, "dueToday": 1, "currentlyRented": 1, "lowStockItems": 1},
        )


class ItemFlowTests(RentalApiTestCase):
    def setUp(self):
        super().setUp()
        self.headers = self.admin_headers()

    def test_create_item_starts_fully_stocked(self):
        response = self.client.post(
            "/api/items",
            json={"name": "Camping Tent", "initialStock": 5, "price": 3000, "unit": "ea"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["currentStock"], 5)
        self.assertTrue(body["id"].startswith("item-"))
        self.assertIn(body["id"], body["imageUrl"])

        listing = self.client.get("/api/items")
        self.assertEqual([item["name"] for item in listing.json()], ["Camping Tent"])

    def test_create_item_requires_name_and_non_negative_numbers(self):
        response = self.client.post(
            "/api/items",
            json={"name": "", "initialStock": -1, "price": 100, "unit": "ea"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(set(response.json()["details"]), {"name", "initialStock"})

    def test_update_item_rejects_stock_above_initial(self):
        self.seed_item("tent", 10)
        response = self.client.put("/api/items/tent", json={"currentStock": 11}, headers=self.headers)
        self.assertEqual(response.status_code, 400)

        ok = self.client.put("/api/items/tent", json={"currentStock": 8, "price": 2500}, headers=self.headers)
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["currentStock"], 8)
        self.assertEqual(ok.json()["price"], 2500)

    def test_delete_item_with_active_application_is_refused(self):
        self.seed_item("tent", 10)
        created = self.apply([("tent", 2)]).json()

        response = self.client.delete("/api/items/tent", headers=self.headers)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "ActiveReservationConflict")

        self.client.put(
            f"/api/admin/rentals/{created['id']}",
            json={"status": "Returned", "actualReturnDate": RETURN_DATE.isoformat()},
            headers=self.headers,
        )
        self.assertEqual(self.client.delete("/api/items/tent", headers=self.headers).status_code, 204)
        self.assertEqual(self.client.get("/api/items/tent", headers=self.headers).status_code, 404)

        kept = self.client.get(f"/api/admin/rentals/{created['id']}", headers=self.headers).json()
        self.assertEqual(kept["items"], [{"itemId": "tent", "quantity": 2}])

    def test_returned_application_with_deleted_item_can_still_be_edited(self):
        self.seed_item("tent", 10, price=1500)
        created = self.apply([("tent", 2)]).json()
        self.client.put(
            f"/api/admin/rentals/{created['id']}",
            json={"status": "Returned", "actualReturnDate": RETURN_DATE.isoformat()},
            headers=self.headers,
        )
        self.assertEqual(self.client.delete("/api/items/tent", headers=self.headers).status_code, 204)

        response = self.client.put(
            f"/api/admin/rentals/{created['id']}",
            json={"depositRefunded": True, "returnStaff": "Choi"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["depositRefunded"])
        self.assertEqual(body["returnStaff"], "Choi")
        self.assertEqual(body["items"], [{"itemId": "tent", "quantity": 2}])
        self.assertEqual(body["totalItemCost"], 3000)
        self.assertEqual(body["totalAmount"], 13000)

        repriced = self.client.put(
            f"/api/admin/rentals/{created['id']}",
            json={"items": [{"itemId": "tent", "quantity": 1}]},
            headers=self.headers,
        )
        self.assertEqual(repriced.status_code, 400)

    def test_returned_application_with_deleted_item_can_still_be_deleted(self):
        self.seed_item("tent", 10)
        created = self.apply([("tent", 2)]).json()
        self.client.put(
            f"/api/admin/rentals/{created['id']}",
            json={"status": "Returned", "actualReturnDate": RETURN_DATE.isoformat()},
            headers=self.headers,
        )
        self.client.delete("/api/items/tent", headers=self.headers)
        response = self.client.delete(f"/api/admin/rentals/{created['id']}", headers=self.headers)
        self.assertEqual(response.status_code, 204)


if __name__ == "__main__":
    unittest.main()
