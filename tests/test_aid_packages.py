"""Tests for the aid package lifecycle."""
from datetime import datetime, timedelta

import pytest

from conftest import DONOR_ADDRESS, package_fields
from errors import AuthorizationError, InvalidStateError, LedgerCallError, NotFoundError, ValidationError
from extensions import db
from models import AidPackage, Donation, DonationStatus, PackageStatus
from units import eth_to_gwei


class TestCreate:
    def test_create_starts_active_and_links_ledger(self, make_package, mirror):
        package = make_package()

        assert package.status == PackageStatus.ACTIVE.value
        assert package.current_funding == 0
        assert package.is_funded is False
        assert package.creation_tx_hash is not None
        assert package.ledger_id is not None
        assert mirror.operations() == ["createPackage"]

    def test_ledger_failure_keeps_local_package(self, ledger, ngo, mirror):
        mirror.failing.add("createPackage")

        package, tx_hash = ledger.create(ngo, package_fields())

        assert tx_hash is None
        assert db.session.get(AidPackage, package.id) is not None
        assert package.status == PackageStatus.ACTIVE.value
        assert package.creation_tx_hash is None
        assert package.ledger_id is None

    def test_only_ngos_create(self, ledger, donor):
        with pytest.raises(AuthorizationError):
            ledger.create(donor, package_fields())
        assert AidPackage.query.count() == 0

    @pytest.mark.parametrize("field", ["quantity", "beneficiary_count"])
    def test_counts_must_be_positive(self, ledger, ngo, field):
        with pytest.raises(ValidationError) as exc:
            ledger.create(ngo, package_fields(**{field: 0}))
        assert field in exc.value.details["fields"]
        assert AidPackage.query.count() == 0


class TestDonations:
    def test_scenario_funding_reaches_goal(self, make_package, ledger, donor):
        package = make_package(funding_goal=eth_to_gwei("100"))

        ledger.record_donation(donor, package.id, eth_to_gwei("60"), DONOR_ADDRESS)
        package = ledger.get(package.id)
        assert package.status == PackageStatus.ACTIVE.value
        assert package.current_funding == eth_to_gwei("60")
        assert package.is_funded is False

        ledger.record_donation(donor, package.id, eth_to_gwei("40"), DONOR_ADDRESS)
        package = ledger.get(package.id)
        assert package.status == PackageStatus.FUNDED.value
        assert package.current_funding == eth_to_gwei("100")
        assert package.is_funded is True

    def test_funded_package_keeps_accepting(self, funded_package, ledger, donor):
        ledger.record_donation(donor, funded_package.id, eth_to_gwei("5"), DONOR_ADDRESS)

        package = ledger.get(funded_package.id)
        assert package.status == PackageStatus.FUNDED.value
        assert package.current_funding == eth_to_gwei("105")

    def test_funding_matches_confirmed_donations(self, make_package, ledger, donor):
        package = make_package()
        for amount in ("12.5", "0.25", "30"):
            ledger.record_donation(donor, package.id, eth_to_gwei(amount), DONOR_ADDRESS)

        total, count = ledger.donation_totals(package.id)
        package = ledger.get(package.id)
        assert count == 3
        assert total == package.current_funding == eth_to_gwei("42.75")
        assert len(package.funding_tx_hashes) == 3

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount_rejected(self, make_package, ledger, donor, mirror, amount):
        package = make_package()
        calls = len(mirror.calls)

        with pytest.raises(ValidationError):
            ledger.record_donation(donor, package.id, amount, DONOR_ADDRESS)

        assert len(mirror.calls) == calls
        assert ledger.get(package.id).current_funding == 0

    def test_ledger_failure_records_nothing(self, make_package, ledger, donor, mirror):
        package = make_package()
        mirror.failing.add("recordDonation")

        with pytest.raises(LedgerCallError):
            ledger.record_donation(donor, package.id, eth_to_gwei("10"), DONOR_ADDRESS)

        assert Donation.query.count() == 0
        assert ledger.get(package.id).current_funding == 0

    def test_unlinked_package_cannot_take_donations(self, ledger, ngo, donor, mirror):
        mirror.failing.add("createPackage")
        package, _ = ledger.create(ngo, package_fields())

        with pytest.raises(LedgerCallError):
            ledger.record_donation(donor, package.id, eth_to_gwei("10"), DONOR_ADDRESS)
        assert Donation.query.count() == 0

    def test_cancelled_package_rejects_donations(self, make_package, ledger, ngo, donor):
        package = make_package()
        ledger.cancel(ngo, package.id)

        with pytest.raises(InvalidStateError) as exc:
            ledger.record_donation(donor, package.id, eth_to_gwei("10"), DONOR_ADDRESS)
        assert exc.value.current_status == PackageStatus.CANCELLED.value

    def test_missing_package(self, ledger, donor):
        with pytest.raises(NotFoundError):
            ledger.record_donation(donor, 999, eth_to_gwei("1"), DONOR_ADDRESS)

    def test_only_donors_donate(self, make_package, ledger, ngo):
        package = make_package()
        with pytest.raises(AuthorizationError):
            ledger.record_donation(ngo, package.id, eth_to_gwei("1"), DONOR_ADDRESS)

    def test_zero_goal_funded_by_first_donation(self, make_package, ledger, donor):
        package = make_package(funding_goal=0)
        assert package.status == PackageStatus.ACTIVE.value

        ledger.record_donation(donor, package.id, eth_to_gwei("0.001"), DONOR_ADDRESS)
        assert ledger.get(package.id).status == PackageStatus.FUNDED.value

    def test_package_closed_while_ledger_call_in_flight(self, make_package, ledger, donor, mirror):
        package = make_package()

        def cancel_elsewhere():
            AidPackage.query.filter_by(id=package.id).update(
                {AidPackage.status: PackageStatus.CANCELLED.value}, synchronize_session=False
            )
            db.session.commit()

        mirror.before["recordDonation"] = cancel_elsewhere

        with pytest.raises(InvalidStateError) as exc:
            ledger.record_donation(donor, package.id, eth_to_gwei("5"), DONOR_ADDRESS)

        assert exc.value.current_status == PackageStatus.CANCELLED.value
        tx_hash = exc.value.details["transaction_hash"]
        package = ledger.get(package.id)
        assert package.current_funding == 0
        assert package.status == PackageStatus.CANCELLED.value
        donation = Donation.query.filter_by(aid_package_id=package.id).one()
        assert donation.status == DonationStatus.PENDING.value
        assert donation.transaction_hash == tx_hash
        assert ledger.donation_totals(package.id) == (0, 0)


class TestCancelAndUpdate:
    def test_cancel_unfunded_package(self, make_package, ledger, ngo):
        package = make_package()

        cancelled = ledger.cancel(ngo, package.id)

        assert cancelled.status == PackageStatus.CANCELLED.value
        assert cancelled.current_funding == 0

    def test_cancel_with_funding_rejected(self, make_package, ledger, ngo, donor):
        package = make_package()
        ledger.record_donation(donor, package.id, eth_to_gwei("1"), DONOR_ADDRESS)

        with pytest.raises(InvalidStateError):
            ledger.cancel(ngo, package.id)
        assert ledger.get(package.id).status == PackageStatus.ACTIVE.value

    def test_cancel_funded_package_rejected(self, funded_package, ledger, ngo):
        with pytest.raises(InvalidStateError) as exc:
            ledger.cancel(ngo, funded_package.id)
        assert exc.value.current_status == PackageStatus.FUNDED.value

    def test_only_owner_cancels(self, make_package, ledger, other_ngo):
        package = make_package()
        with pytest.raises(AuthorizationError):
            ledger.cancel(other_ngo, package.id)

    def test_cancel_loses_race_with_donation(self, make_package, ledger, ngo, monkeypatch):
        package = make_package()

        def fund_elsewhere(user, pkg, action):
            # The loaded package still shows zero funding
            AidPackage.query.filter_by(id=pkg.id).update(
                {AidPackage.current_funding: 5}, synchronize_session=False
            )

        monkeypatch.setattr(ledger, "_require_owner", fund_elsewhere)

        with pytest.raises(InvalidStateError) as exc:
            ledger.cancel(ngo, package.id)

        assert exc.value.message == "Aid package changed while cancelling"
        assert ledger.get(package.id).status == PackageStatus.ACTIVE.value

    def test_update_descriptive_fields_only(self, make_package, ledger, ngo):
        package = make_package()
        new_date = datetime.utcnow() + timedelta(days=30)

        updated = ledger.update(
            ngo,
            package.id,
            {
                "title": "Food and water supplies",
                "expected_delivery_date": new_date,
                "tags": ["water"],
                "funding_goal": 1,
                "current_funding": 10**12,
            },
        )

        assert updated.title == "Food and water supplies"
        assert updated.tags == ["water"]
        assert updated.funding_goal == eth_to_gwei("100")
        assert updated.current_funding == 0

    def test_update_after_cancel_rejected(self, make_package, ledger, ngo):
        package = make_package()
        ledger.cancel(ngo, package.id)

        with pytest.raises(InvalidStateError):
            ledger.update(ngo, package.id, {"title": "Too late now"})

    def test_update_by_other_ngo_rejected(self, make_package, ledger, other_ngo):
        package = make_package()
        with pytest.raises(AuthorizationError):
            ledger.update(other_ngo, package.id, {"title": "Not my package"})


class TestQueries:
    def test_search_filters_and_paginates(self, make_package, ledger, ngo):
        make_package(title="Medicine for clinics", item_type="Medicine", city="Chittagong")
        make_package(title="Winter blankets drive", item_type="Clothing")
        make_package()

        page = ledger.search({"item_type": "Medicine"})
        assert [p.title for p in page.items] == ["Medicine for clinics"]

        page = ledger.search({"city": "chitta"})
        assert page.total == 1

        page = ledger.search({"search": "blankets"})
        assert page.total == 1

        page = ledger.search({}, page=1, per_page=2)
        assert page.total == 3
        assert len(page.items) == 2
        assert page.has_next

    def test_get_counts_views(self, make_package, ledger):
        package = make_package()
        ledger.get(package.id, count_view=True)
        ledger.get(package.id, count_view=True)
        assert ledger.get(package.id).view_count == 2
