"""Pytest configuration and fixtures for HelpChain tests."""
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from app import create_app
from chain_mirror import ChainMirror, LedgerReceipt
from errors import LedgerCallError
from extensions import db
from models import Role, User
from units import eth_to_gwei

PASSWORD = "password123"
DONOR_ADDRESS = "0x" + "ab" * 20
VOLUNTEER_ADDRESS = "0x" + "cd" * 20


class FakeChainMirror(ChainMirror):
    """In-memory stand-in for the contract.

    Every call is recorded in ``calls``. Operation names added to ``failing``
    raise LedgerCallError, as an unreachable node would. A callable stored in
    ``before[operation]`` runs once just before that call returns, to let a
    test change the database while the transaction is "in flight".
    """

    def __init__(self):
        super().__init__(None)
        self.calls = []
        self.failing = set()
        self.before = {}
        self._counter = 0

    def _receipt(self, operation, *args, emits_id=False):
        self.calls.append((operation, args))
        if operation in self.failing:
            raise LedgerCallError(operation, "simulated outage")
        hook = self.before.pop(operation, None)
        if hook is not None:
            hook()
        self._counter += 1
        return LedgerReceipt(
            tx_hash="0x" + format(self._counter, "064x"),
            block_number=1000 + self._counter,
            ledger_id=self._counter if emits_id else None,
        )

    def operations(self):
        return [op for op, _ in self.calls]

    def create_package(self, description, item_type, quantity, funding_goal_gwei):
        return self._receipt("createPackage", description, item_type, quantity, funding_goal_gwei,
                             emits_id=True)

    def record_donation(self, package_ledger_id, amount_gwei):
        self._require_id("recordDonation", package_ledger_id)
        return self._receipt("recordDonation", package_ledger_id, amount_gwei, emits_id=True)

    def pledge(self, package_ledger_id):
        self._require_id("pledge", package_ledger_id)
        return self._receipt("pledge", package_ledger_id, emits_id=True)

    def update_status(self, package_ledger_id, status):
        self._require_id("updateStatus", package_ledger_id)
        return self._receipt("updateStatus", package_ledger_id, status)

    def confirm(self, package_ledger_id, proof):
        self._require_id("confirm", package_ledger_id)
        return self._receipt("confirm", package_ledger_id, proof)


@pytest.fixture(scope="function")
def mirror():
    return FakeChainMirror()


@pytest.fixture(scope="function")
def app(mirror):
    """Provide an app bound to a fresh in-memory SQLite database.

    No application context is left pushed, so test clients for different
    users never share Flask-Login state.
    """
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "LOG_LEVEL": "WARNING",
            "OTP_TTL_SECONDS": 900,
            "OTP_MAX_ATTEMPTS": 3,
        },
        chain_mirror=mirror,
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope="function")
def accounts(app):
    """One account per role (plus a second NGO and volunteer)."""
    specs = {
        "ngo": (Role.NGO, "ngo@helpchain.org"),
        "other_ngo": (Role.NGO, "other-ngo@helpchain.org"),
        "donor": (Role.DONOR, "donor@helpchain.org"),
        "volunteer": (Role.VOLUNTEER, "volunteer@helpchain.org"),
        "other_volunteer": (Role.VOLUNTEER, "other-volunteer@helpchain.org"),
    }
    created = {}
    with app.app_context():
        for key, (role, email) in specs.items():
            user = User(name=key.replace("_", " ").title(), email=email, role=role.value)
            user.set_password(PASSWORD)
            db.session.add(user)
            db.session.commit()
            created[key] = SimpleNamespace(id=user.id, email=email, password=PASSWORD)
    return created


@pytest.fixture(scope="function")
def ctx(app):
    with app.app_context():
        yield
        db.session.rollback()


def _user(accounts, key):
    return db.session.get(User, accounts[key].id)


@pytest.fixture
def ngo(ctx, accounts):
    return _user(accounts, "ngo")


@pytest.fixture
def other_ngo(ctx, accounts):
    return _user(accounts, "other_ngo")


@pytest.fixture
def donor(ctx, accounts):
    return _user(accounts, "donor")


@pytest.fixture
def volunteer(ctx, accounts):
    return _user(accounts, "volunteer")


@pytest.fixture
def other_volunteer(ctx, accounts):
    return _user(accounts, "other_volunteer")


@pytest.fixture
def ledger(app):
    return app.extensions["aid_packages"]


@pytest.fixture
def tracker(app):
    return app.extensions["deliveries"]


def package_fields(**overrides):
    fields = {
        "title": "Emergency food supplies",
        "description": "Rice and lentils for families displaced by flooding",
        "item_type": "Food",
        "quantity": 100,
        "unit": "kg",
        "funding_goal": eth_to_gwei("100"),
        "address": "12 Market Road",
        "city": "Sylhet",
        "country": "Bangladesh",
        "expected_delivery_date": datetime.utcnow() + timedelta(days=10),
        "beneficiary_count": 50,
        "urgency_level": "High",
        "tags": ["flood", "food"],
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def make_package(ledger, ngo):
    """Factory creating an Active package owned by the ``ngo`` fixture."""

    def _make(**overrides):
        package, _ = ledger.create(ngo, package_fields(**overrides))
        return package

    return _make


@pytest.fixture
def funded_package(make_package, ledger, donor):
    package = make_package()
    ledger.record_donation(donor, package.id, eth_to_gwei("100"), DONOR_ADDRESS)
    return package


@pytest.fixture
def login(app, accounts):
    """Return a test client logged in as the given account key."""

    def _login(key):
        client = app.test_client()
        account = accounts[key]
        resp = client.post("/auth/login", json={"email": account.email, "password": account.password})
        assert resp.status_code == 200, resp.get_json()
        return client

    return _login
