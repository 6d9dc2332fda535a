import logging
from typing import Optional

from flask import Flask, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.exceptions import HTTPException

from aid_packages import AidPackageLedger, require_role
from chain_mirror import ChainMirror
from deliveries import DeliveryTracker
from errors import AuthenticationRequired, AuthorizationError, HelpChainError, ServerError, ValidationError
from extensions import db, login_manager
from models import PackageStatus, Role
from units import gwei_to_eth
from web3_service import init_web3, signed_by

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("street", "city", "state", "country", "zip_code")


def create_app(test_config: Optional[dict] = None, chain_mirror: Optional[ChainMirror] = None) -> Flask:
    """Application factory.

    ``chain_mirror`` replaces the mirror built from ETH_RPC_URL and
    CONTRACT_ADDRESS; tests pass a fake one.
    """
    app = Flask(__name__)
    # Optional: load .env if present
    from dotenv import load_dotenv
    load_dotenv()
    app.config.from_object("config.Config")
    if test_config:
        app.config.update(test_config)
    # Logging setup
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("werkzeug").setLevel(level)

    # Init extensions
    db.init_app(app)
    login_manager.init_app(app)

    # One mirror per process, handed to both state machines
    if chain_mirror is None:
        w3 = init_web3(app.config.get("ETH_RPC_URL", ""), timeout=app.config["LEDGER_TIMEOUT"])
        chain_mirror = ChainMirror.from_config(app.config, w3)
    packages = AidPackageLedger(chain_mirror)
    tracker = DeliveryTracker(
        chain_mirror,
        packages,
        otp_ttl_seconds=int(app.config.get("OTP_TTL_SECONDS", 0)),
        otp_max_attempts=int(app.config.get("OTP_MAX_ATTEMPTS", 0)),
    )
    app.extensions["chain_mirror"] = chain_mirror
    app.extensions["aid_packages"] = packages
    app.extensions["deliveries"] = tracker

    @login_manager.user_loader
    def load_user(user_id):  # noqa: ANN001
        from models import User
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        raise AuthenticationRequired("Authentication required")

    # Auto-create tables on first run
    with app.app_context():
        import models  # noqa: F401
        db.create_all()

    # ------------------
    # Helpers
    # ------------------
    def json_body() -> dict:
        payload = request.get_json(silent=True)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        return payload

    def bind(form_cls):
        form = form_cls.from_json(json_body())
        if not form.validate():
            raise ValidationError.from_form(form)
        return form

    def with_tx(body: dict, tx_hash: Optional[str], status: int = 200):
        # The hash is left out when the ledger call was skipped or failed
        if tx_hash:
            body["transaction_hash"] = tx_hash
        return jsonify(body), status

    def int_arg(name: str, default: int, minimum: int = 1, maximum: Optional[int] = None) -> int:
        raw = request.args.get(name)
        if raw in (None, ""):
            return default
        try:
            value = int(raw)
        except ValueError:
            raise ValidationError.for_field(name, f"{name} must be an integer")
        if value < minimum or (maximum is not None and value > maximum):
            raise ValidationError.for_field(name, f"{name} is out of range")
        return value

    def pagination_dict(pagination) -> dict:  # noqa: ANN001
        return {
            "current_page": pagination.page,
            "total_pages": pagination.pages,
            "total_items": pagination.total,
            "items_per_page": pagination.per_page,
            "has_next_page": pagination.has_next,
            "has_prev_page": pagination.has_prev,
        }

    # ------------------
    # Auth
    # ------------------
    @app.route("/auth/register", methods=["POST"])
    def register():
        from models import User
        from forms import RegisterForm

        form = bind(RegisterForm)
        if User.query.filter_by(email=form.email.data.lower()).first():
            raise ValidationError.for_field("email", "Email already registered.")
        user = User(
            name=form.name.data,
            email=form.email.data.lower(),
            role=form.role.data,
            wallet_address=form.wallet_address.data or None,
            organization_name=form.organization_name.data or None,
        )
        user.set_password(form.password.data)
        db.session.add(user)
        db.session.commit()
        logger.info("Registered %s user %s", user.role, user.id)
        return jsonify({"user": user.to_dict()}), 201

    @app.route("/auth/login", methods=["POST"])
    def login():
        from models import User
        from forms import LoginForm

        form = bind(LoginForm)
        user = User.query.filter_by(email=form.email.data.lower()).first()
        if user is None or not user.check_password(form.password.data):
            raise AuthenticationRequired("Invalid email or password.")
        login_user(user)
        return jsonify({"user": user.to_dict()})

    @app.route("/auth/logout", methods=["POST"])
    @login_required
    def logout():
        logout_user()
        return jsonify({"message": "Logged out"})

    @app.route("/auth/me")
    @login_required
    def me():
        return jsonify({"user": current_user.to_dict()})

    @app.route("/auth/profile", methods=["PUT"])
    @login_required
    def update_profile():
        from forms import ProfileForm

        form = bind(ProfileForm)
        fields = form.provided_data()
        for name in ("name", "phone", "description"):
            if name not in fields:
                continue
            value = fields[name].strip()
            if name == "name" and not value:
                raise ValidationError.for_field("name", "Name cannot be empty")
            # An empty phone or description clears it
            setattr(current_user, name, value or None)
        address = {k: fields[k].strip() for k in ADDRESS_FIELDS if k in fields}
        if address:
            # Reassigned so the JSON column is flagged as changed
            current_user.address = {**(current_user.address or {}), **address}
        db.session.commit()
        return jsonify({"message": "Profile updated successfully", "user": current_user.to_dict()})

    @app.route("/auth/verify-wallet", methods=["POST"])
    @login_required
    def verify_wallet():
        from forms import VerifyWalletForm

        form = bind(VerifyWalletForm)
        if not current_user.wallet_address:
            raise ValidationError.for_field("wallet_address", "No wallet address on this account")
        if not signed_by(form.message.data, form.signature.data, current_user.wallet_address):
            raise ValidationError.for_field("signature", "Invalid signature")
        current_user.is_verified = True
        db.session.commit()
        logger.info("Wallet of user %s verified", current_user.id)
        return jsonify({"message": "Wallet verified successfully", "user": current_user.to_dict()})

    # ------------------
    # Aid packages
    # ------------------
    @app.route("/aid-packages", methods=["POST"])
    @login_required
    def create_aid_package():
        from forms import AidPackageForm

        require_role(current_user, Role.NGO)
        form = bind(AidPackageForm)
        package, tx_hash = packages.create(current_user, form.data)
        return with_tx({"aid_package": package.to_dict()}, tx_hash, 201)

    @app.route("/aid-packages", methods=["GET"])
    def list_aid_packages():
        status = request.args.get("status", "").strip()
        if status and status not in {s.value for s in PackageStatus}:
            raise ValidationError.for_field("status", "Invalid status")
        page = int_arg("page", 1)
        limit = int_arg("limit", 10, maximum=100)
        filters = {
            "status": status,
            "item_type": request.args.get("item_type", "").strip(),
            "urgency_level": request.args.get("urgency_level", "").strip(),
            "city": request.args.get("city", "").strip(),
            "country": request.args.get("country", "").strip(),
            "search": request.args.get("search", "").strip(),
        }
        pagination = packages.search(
            filters,
            page=page,
            per_page=limit,
            sort_by=request.args.get("sort_by", "created_at"),
            sort_order=request.args.get("sort_order", "desc"),
        )
        return jsonify(
            {
                "aid_packages": [p.to_dict() for p in pagination.items],
                "pagination": pagination_dict(pagination),
            }
        )

    @app.route("/aid-packages/<int:package_id>", methods=["GET"])
    def get_aid_package(package_id: int):
        package = packages.get(package_id, count_view=True)
        body = package.to_dict()
        delivery = tracker.active_for_package(package.id)
        body["delivery"] = delivery.to_dict() if delivery else None
        return jsonify({"aid_package": body})

    @app.route("/aid-packages/ngo/<int:ngo_id>", methods=["GET"])
    def list_ngo_packages(ngo_id: int):
        pagination = packages.for_ngo(
            ngo_id,
            status=request.args.get("status", "").strip(),
            page=int_arg("page", 1),
            per_page=int_arg("limit", 10, maximum=100),
        )
        return jsonify(
            {
                "aid_packages": [p.to_dict() for p in pagination.items],
                "pagination": pagination_dict(pagination),
            }
        )

    @app.route("/aid-packages/<int:package_id>", methods=["PUT"])
    @login_required
    def update_aid_package(package_id: int):
        from forms import UpdateAidPackageForm

        form = bind(UpdateAidPackageForm)
        package = packages.update(current_user, package_id, form.provided_data())
        return jsonify({"aid_package": package.to_dict()})

    @app.route("/aid-packages/<int:package_id>", methods=["DELETE"])
    @login_required
    def cancel_aid_package(package_id: int):
        package = packages.cancel(current_user, package_id)
        return jsonify({"message": "Aid package cancelled successfully", "aid_package": package.to_dict()})

    # ------------------
    # Donations
    # ------------------
    @app.route("/donations/<int:package_id>", methods=["POST"])
    @login_required
    def donate(package_id: int):
        from forms import DonationForm

        require_role(current_user, Role.DONOR)
        form = bind(DonationForm)
        donation = packages.record_donation(
            current_user,
            package_id,
            form.amount.data,
            form.donor_address.data,
            currency=form.currency.data or None,
            message=form.message.data or None,
        )
        package = packages.get(package_id)
        return with_tx(
            {"donation": donation.to_dict(), "aid_package": package.to_dict()},
            donation.transaction_hash,
            201,
        )

    @app.route("/donations/donor/<int:donor_id>", methods=["GET"])
    @login_required
    def donor_donations(donor_id: int):
        if current_user.id != donor_id:
            raise AuthorizationError("Access denied")
        return jsonify({"donations": [d.to_dict() for d in packages.donations_by(donor_id)]})

    @app.route("/donations/package/<int:package_id>", methods=["GET"])
    def package_donations(package_id: int):
        total, count = packages.donation_totals(package_id)
        return jsonify({"aid_package_id": package_id, "total": gwei_to_eth(total), "count": count})

    # ------------------
    # Deliveries
    # ------------------
    @app.route("/deliveries/pledge/<int:package_id>", methods=["POST"])
    @login_required
    def pledge_delivery(package_id: int):
        from forms import PledgeForm

        require_role(current_user, Role.VOLUNTEER)
        form = bind(PledgeForm)
        delivery, tx_hash = tracker.pledge(
            current_user,
            package_id,
            volunteer_address=form.volunteer_address.data or None,
            transport_method=form.transport_method.data or None,
            estimated_delivery_time=form.estimated_delivery_time.data,
            notes=form.notes.data or None,
        )
        return with_tx({"message": "Delivery pledged successfully", "delivery": delivery.to_dict()}, tx_hash, 201)

    @app.route("/deliveries/status/<int:package_id>", methods=["PATCH"])
    @login_required
    def update_delivery_status(package_id: int):
        from forms import StatusUpdateForm

        form = bind(StatusUpdateForm)
        delivery, tx_hash = tracker.advance(current_user, package_id, form.status.data)
        return with_tx({"message": "Delivery status updated successfully", "delivery": delivery.to_dict()}, tx_hash)

    @app.route("/deliveries/otp/<int:package_id>", methods=["POST"])
    @login_required
    def issue_delivery_code(package_id: int):
        delivery, code = tracker.issue_verification_code(current_user, package_id)
        return jsonify({"delivery_id": delivery.id, "verification_code": code}), 201

    @app.route("/deliveries/confirm/<int:package_id>", methods=["POST"])
    @login_required
    def confirm_delivery(package_id: int):
        from forms import ConfirmDeliveryForm

        form = bind(ConfirmDeliveryForm)
        delivery, tx_hash = tracker.confirm(
            current_user,
            package_id,
            form.proof.data,
            otp=form.otp.data or None,
            proof_type=form.proof_type.data or None,
        )
        package = packages.get(package_id)
        return with_tx(
            {
                "message": "Delivery confirmed successfully",
                "delivery": delivery.to_dict(),
                "aid_package": package.to_dict(),
            },
            tx_hash,
        )

    @app.route("/deliveries/fail/<int:package_id>", methods=["POST"])
    @login_required
    def fail_delivery(package_id: int):
        from forms import FailDeliveryForm

        form = bind(FailDeliveryForm)
        delivery, tx_hash = tracker.fail(current_user, package_id, form.reason.data)
        return with_tx({"delivery": delivery.to_dict()}, tx_hash)

    @app.route("/deliveries/cancel/<int:package_id>", methods=["POST"])
    @login_required
    def cancel_delivery(package_id: int):
        delivery, tx_hash = tracker.cancel(current_user, package_id)
        return with_tx({"delivery": delivery.to_dict()}, tx_hash)

    @app.route("/deliveries/available", methods=["GET"])
    @login_required
    def available_deliveries():
        return jsonify({"aid_packages": [p.to_dict() for p in tracker.available_packages()]})

    @app.route("/deliveries/volunteer/<int:volunteer_id>", methods=["GET"])
    @login_required
    def volunteer_deliveries(volunteer_id: int):
        if current_user.id != volunteer_id:
            raise AuthorizationError("Access denied")
        return jsonify(
            {
                "deliveries": [d.to_dict() for d in tracker.for_volunteer(volunteer_id)],
                "stats": tracker.volunteer_stats(volunteer_id),
            }
        )

    # ------------------
    # Ledger
    # ------------------
    @app.route("/ledger/status")
    def ledger_status():
        return jsonify(chain_mirror.status())

    # Error handlers
    @app.errorhandler(HelpChainError)
    def helpchain_error(error: HelpChainError):
        db.session.rollback()
        return jsonify({"error": error.to_dict()}), error.status_code

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        kind = "not_found" if error.code == 404 else "http_error"
        return jsonify({"error": {"kind": kind, "message": error.description, "details": {}}}), error.code

    @app.errorhandler(Exception)
    def internal_error(error):  # noqa: ANN001
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        db.session.rollback()
        return jsonify({"error": ServerError().to_dict()}), 500

    return app


# Optional: allow `python app.py` to run a dev server
if __name__ == "__main__":
    application = create_app()
    application.run(host="127.0.0.1", port=5000, debug=True)
