"""Aid package lifecycle.

    Active --donations reach goal--> Funded --pledge--> InDelivery --confirm--> Delivered
    Active --cancel (no funding)--> Cancelled

Status flips are compare-and-set updates so concurrent requests cannot move
a package twice. Funding is accrued with an atomic SQL increment.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from chain_mirror import ChainMirror
from errors import (
    AuthorizationError,
    InvalidStateError,
    LedgerCallError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from extensions import db
from models import AidPackage, Donation, DonationStatus, PackageStatus, Role, User

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("title", "description", "expected_delivery_date", "urgency_level", "tags")
DONATABLE = (PackageStatus.ACTIVE.value, PackageStatus.FUNDED.value)
SORTABLE = {
    "created_at": AidPackage.created_at,
    "funding_goal": AidPackage.funding_goal,
    "current_funding": AidPackage.current_funding,
    "expected_delivery_date": AidPackage.expected_delivery_date,
}


def require_role(user: Optional[User], role: Role) -> User:
    if user is None or not getattr(user, "is_authenticated", False):
        raise AuthorizationError("Authentication required")
    if user.role_enum is not role:
        raise AuthorizationError(f"Only {role.value} accounts can perform this action")
    return user


class AidPackageLedger:
    def __init__(self, mirror: ChainMirror):
        self.mirror = mirror

    # ------------------
    # Queries
    # ------------------
    def get(self, package_id: int, count_view: bool = False) -> AidPackage:
        package = db.session.get(AidPackage, package_id)
        if package is None:
            raise NotFoundError("Aid package not found", details={"aid_package_id": package_id})
        if count_view:
            AidPackage.query.filter_by(id=package_id).update(
                {AidPackage.view_count: AidPackage.view_count + 1}, synchronize_session=False
            )
            db.session.commit()
            db.session.refresh(package)
        return package

    def search(self, filters: Dict[str, Any], page: int = 1, per_page: int = 10,
               sort_by: str = "created_at", sort_order: str = "desc"):
        q = AidPackage.query
        if filters.get("status"):
            q = q.filter(AidPackage.status == filters["status"])
        if filters.get("item_type"):
            q = q.filter(AidPackage.item_type == filters["item_type"])
        if filters.get("urgency_level"):
            q = q.filter(AidPackage.urgency_level == filters["urgency_level"])
        if filters.get("ngo_id"):
            q = q.filter(AidPackage.ngo_id == filters["ngo_id"])
        if filters.get("city"):
            q = q.filter(AidPackage.city.ilike(f"%{filters['city']}%"))
        if filters.get("country"):
            q = q.filter(AidPackage.country.ilike(f"%{filters['country']}%"))
        if filters.get("search"):
            term = f"%{filters['search']}%"
            q = q.filter(or_(AidPackage.title.ilike(term), AidPackage.description.ilike(term)))

        column = SORTABLE.get(sort_by, AidPackage.created_at)
        q = q.order_by(column.asc() if sort_order == "asc" else column.desc(), AidPackage.id.desc())
        return q.paginate(page=page, per_page=per_page, error_out=False)

    def for_ngo(self, ngo_id: int, status: str = "", page: int = 1, per_page: int = 10):
        return self.search({"ngo_id": ngo_id, "status": status}, page=page, per_page=per_page)

    def donation_totals(self, package_id: int) -> Tuple[int, int]:
        """(total gwei, count) of confirmed donations for a package."""
        self.get(package_id)
        total, count = (
            db.session.query(func.coalesce(func.sum(Donation.amount), 0), func.count(Donation.id))
            .filter(
                Donation.aid_package_id == package_id,
                Donation.status == DonationStatus.CONFIRMED.value,
            )
            .one()
        )
        return int(total), int(count)

    def donations_by(self, donor_id: int) -> List[Donation]:
        return (
            Donation.query.filter_by(donor_id=donor_id)
            .order_by(Donation.created_at.desc(), Donation.id.desc())
            .all()
        )

    # ------------------
    # Transitions
    # ------------------
    def create(self, ngo: User, fields: Dict[str, Any]) -> Tuple[AidPackage, Optional[str]]:
        require_role(ngo, Role.NGO)
        if (fields.get("quantity") or 0) < 1:
            raise ValidationError.for_field("quantity", "Quantity must be at least 1")
        if (fields.get("beneficiary_count") or 0) < 1:
            raise ValidationError.for_field("beneficiary_count", "Beneficiary count must be at least 1")
        if fields.get("funding_goal") is None or fields["funding_goal"] < 0:
            raise ValidationError.for_field("funding_goal", "Funding goal cannot be negative")

        package = AidPackage(
            ngo_id=ngo.id,
            title=fields["title"],
            description=fields["description"],
            item_type=fields["item_type"],
            quantity=fields["quantity"],
            unit=fields["unit"],
            funding_goal=fields["funding_goal"],
            current_funding=0,
            status=PackageStatus.ACTIVE.value,
            urgency_level=fields.get("urgency_level") or "Medium",
            expected_delivery_date=fields["expected_delivery_date"],
            beneficiary_count=fields["beneficiary_count"],
            tags=list(fields.get("tags") or []),
            address=fields["address"],
            city=fields["city"],
            state=fields.get("state") or None,
            country=fields["country"],
            zip_code=fields.get("zip_code") or None,
        )
        db.session.add(package)
        db.session.commit()
        logger.info("Aid package %s created by NGO %s", package.id, ngo.id)

        try:
            receipt = self.mirror.create_package(
                package.description, package.item_type, package.quantity, package.funding_goal
            )
        except LedgerCallError as e:
            logger.warning("Aid package %s has no ledger linkage: %s", package.id, e.reason)
            return package, None

        package.creation_tx_hash = receipt.tx_hash
        package.ledger_id = receipt.ledger_id
        db.session.commit()
        return package, receipt.tx_hash

    def record_donation(self, donor: User, package_id: int, amount: int, donor_address: str,
                        currency: Optional[str] = None, message: Optional[str] = None) -> Donation:
        """Record a donation that has been paid into the contract.

        The ledger call comes first; if it fails nothing is written locally.
        A donation that reaches the ledger after the package stopped accepting
        funds is stored as Pending and not added to the package total.
        """
        require_role(donor, Role.DONOR)
        if amount is None or amount <= 0:
            raise ValidationError.for_field("amount", "Donation amount must be positive")
        package = self.get(package_id)
        if package.status not in DONATABLE:
            raise InvalidStateError(
                "Cannot donate to this aid package", current_status=package.status
            )

        try:
            receipt = self.mirror.record_donation(package.ledger_id, amount)
        except LedgerCallError as e:
            logger.error("Donation to package %s rejected, ledger call failed: %s", package.id, e.reason)
            raise

        donation = Donation(
            donor_id=donor.id,
            aid_package_id=package.id,
            amount=amount,
            currency=currency or "ETH",
            donor_address=donor_address,
            message=message or None,
            transaction_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            ledger_id=receipt.ledger_id,
            status=DonationStatus.CONFIRMED.value,
        )
        try:
            accrued = (
                AidPackage.query.filter(
                    AidPackage.id == package.id, AidPackage.status.in_(DONATABLE)
                ).update(
                    {AidPackage.current_funding: AidPackage.current_funding + amount},
                    synchronize_session=False,
                )
            )
            if accrued != 1:
                # The package moved on between the check and the ledger call.
                # The payment is on-chain, so keep it as Pending for follow-up.
                donation.status = DonationStatus.PENDING.value
                db.session.add(donation)
                db.session.commit()
                db.session.refresh(package)
                logger.error(
                    "Ledger donation %s could not be accrued to package %s (%s)",
                    receipt.tx_hash, package.id, package.status,
                )
                raise InvalidStateError(
                    "Aid package is no longer accepting donations",
                    current_status=package.status,
                    transaction_hash=receipt.tx_hash,
                )
            db.session.add(donation)
            AidPackage.query.filter(
                AidPackage.id == package.id,
                AidPackage.status == PackageStatus.ACTIVE.value,
                AidPackage.current_funding >= AidPackage.funding_goal,
            ).update(
                {AidPackage.status: PackageStatus.FUNDED.value, AidPackage.is_funded: True},
                synchronize_session=False,
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.exception("Could not store donation %s for package %s", receipt.tx_hash, package.id)
            raise ServerError("Donation was recorded on the ledger but could not be stored")

        db.session.refresh(package)
        logger.info(
            "Donation %s of %s gwei to package %s (%s)", donation.id, amount, package.id, package.status
        )
        return donation

    def update(self, ngo: User, package_id: int, fields: Dict[str, Any]) -> AidPackage:
        require_role(ngo, Role.NGO)
        package = self.get(package_id)
        self._require_owner(ngo, package, "update")
        if package.is_terminal:
            raise InvalidStateError("Cannot update delivered or cancelled packages",
                                    current_status=package.status)
        for name in UPDATABLE_FIELDS:
            if name in fields and fields[name] is not None:
                setattr(package, name, list(fields[name]) if name == "tags" else fields[name])
        db.session.commit()
        return package

    def cancel(self, ngo: User, package_id: int) -> AidPackage:
        require_role(ngo, Role.NGO)
        package = self.get(package_id)
        self._require_owner(ngo, package, "cancel")
        if package.status != PackageStatus.ACTIVE.value:
            raise InvalidStateError("Only active packages can be cancelled", current_status=package.status)
        if package.current_funding > 0:
            raise InvalidStateError("Cannot cancel packages with existing donations",
                                    current_status=package.status)
        cancelled = AidPackage.query.filter(
            AidPackage.id == package.id,
            AidPackage.status == PackageStatus.ACTIVE.value,
            AidPackage.current_funding == 0,
        ).update({AidPackage.status: PackageStatus.CANCELLED.value}, synchronize_session=False)
        if cancelled != 1:
            db.session.rollback()
            db.session.refresh(package)
            raise InvalidStateError("Aid package changed while cancelling", current_status=package.status)
        db.session.commit()
        db.session.refresh(package)
        logger.info("Aid package %s cancelled", package.id)
        return package

    # Called by the delivery tracker inside its own transaction; no commit here.
    def begin_delivery(self, package: AidPackage) -> None:
        self._flip(package, PackageStatus.FUNDED, PackageStatus.IN_DELIVERY)

    def mark_delivered(self, package: AidPackage) -> None:
        self._flip(package, PackageStatus.IN_DELIVERY, PackageStatus.DELIVERED, is_delivered=True)

    def release_delivery(self, package: AidPackage) -> None:
        self._flip(package, PackageStatus.IN_DELIVERY, PackageStatus.FUNDED)

    # ------------------
    # Internals
    # ------------------
    @staticmethod
    def _require_owner(ngo: User, package: AidPackage, action: str) -> None:
        if package.ngo_id != ngo.id:
            raise AuthorizationError(f"Not authorized to {action} this aid package")

    @staticmethod
    def _flip(package: AidPackage, expected: PackageStatus, target: PackageStatus, **extra: Any) -> None:
        values = {AidPackage.status: target.value}
        for name, value in extra.items():
            values[getattr(AidPackage, name)] = value
        changed = AidPackage.query.filter(
            AidPackage.id == package.id, AidPackage.status == expected.value
        ).update(values, synchronize_session=False)
        if changed != 1:
            with db.session.no_autoflush:
                db.session.refresh(package)
            raise InvalidStateError(
                f"Aid package must be {expected.value}", current_status=package.status
            )
        db.session.expire(package)
