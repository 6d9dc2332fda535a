"""List entities whose ledger linkage is missing, or watch the chain.

Status transitions commit locally even when the ledger call fails, so some
packages and deliveries never receive a transaction hash. Donations that
reached the ledger after their package closed are kept as Pending. This
tool only reports them; re-submitting or refunding is a manual decision.
"""
import argparse
import sys
import time
from typing import Dict, List, Optional

from app import create_app
from models import AidPackage, Delivery, DeliveryStatus, DeliveryStatusUpdate, Donation, DonationStatus


def find_gaps() -> Dict[str, List[dict]]:
    """Collect entities lacking ledger transaction hashes, plus donations
    that are on the ledger but were never accrued to their package."""
    packages = AidPackage.query.filter(AidPackage.creation_tx_hash.is_(None)).order_by(AidPackage.id).all()
    pledges = Delivery.query.filter(Delivery.pledge_tx_hash.is_(None)).order_by(Delivery.id).all()
    confirmations = (
        Delivery.query.filter(
            Delivery.status == DeliveryStatus.DELIVERED.value,
            Delivery.confirmation_tx_hash.is_(None),
        )
        .order_by(Delivery.id)
        .all()
    )
    updates = (
        DeliveryStatusUpdate.query.filter(
            DeliveryStatusUpdate.tx_hash.is_(None),
            DeliveryStatusUpdate.status != DeliveryStatus.DELIVERED.value,
        )
        .order_by(DeliveryStatusUpdate.id)
        .all()
    )
    unaccrued = (
        Donation.query.filter(Donation.status == DonationStatus.PENDING.value)
        .order_by(Donation.id)
        .all()
    )
    return {
        "packages": [{"id": p.id, "status": p.status, "title": p.title} for p in packages],
        "pledges": [{"id": d.id, "aid_package_id": d.aid_package_id, "status": d.status} for d in pledges],
        "confirmations": [{"id": d.id, "aid_package_id": d.aid_package_id} for d in confirmations],
        "status_updates": [
            {"id": u.id, "delivery_id": u.delivery_id, "status": u.status} for u in updates
        ],
        "unaccrued_donations": [
            {"id": d.id, "aid_package_id": d.aid_package_id, "amount": d.amount,
             "transaction_hash": d.transaction_hash}
            for d in unaccrued
        ],
    }


def _print_gaps() -> int:
    """Print the current gaps, return how many were found."""
    gaps = find_gaps()
    total = sum(len(v) for v in gaps.values())
    if total == 0:
        print("[gaps] Every entity is linked to the ledger.")
        return 0
    for section, rows in gaps.items():
        if not rows:
            continue
        print(f"[gaps] {section}: {len(rows)}")
        for row in rows:
            print("  - " + " ".join(f"{k}={v}" for k, v in row.items()))
    return total


def watch_gaps(interval: float, once: bool) -> int:
    app = create_app()
    with app.app_context():
        if once:
            return _print_gaps()
        print("[watch] Watching ledger linkage gaps ...", flush=True)
        last: Optional[int] = None
        while True:
            try:
                total = sum(len(v) for v in find_gaps().values())
                if total != last:
                    _print_gaps()
                    last = total
                time.sleep(interval)
            except KeyboardInterrupt:
                print("\n[watch] Stopped.")
                return last or 0
            except Exception as e:  # noqa: BLE001
                print(f"[watch] Error: {e}", file=sys.stderr)
                time.sleep(max(1.0, interval))


def watch_chain(interval: float) -> None:
    app = create_app()
    mirror = app.extensions["chain_mirror"]
    info = mirror.status()
    if not info["connected"]:
        print(f"[chain] Not connected: {info['error'] or 'set ETH_RPC_URL'}", file=sys.stderr)
        return
    print(f"[watch] Watching chain {info['chain_id']} (polling latest block) ...", flush=True)
    last_block: Optional[int] = None
    while True:
        try:
            number = mirror.status()["latest_block"]
            if number is not None and number != last_block:
                print(f"[chain] Latest block: {number}", flush=True)
                last_block = number
            time.sleep(interval)
        except KeyboardInterrupt:
            print("\n[watch] Stopped.")
            return
        except Exception as e:  # noqa: BLE001
            print(f"[watch] Error: {e}", file=sys.stderr)
            time.sleep(max(1.0, interval))


def main() -> None:
    parser = argparse.ArgumentParser(description="Report missing ledger linkage or watch the chain")
    parser.add_argument(
        "--source",
        choices=["gaps", "chain"],
        default="gaps",
        help="gaps (local entities without tx hashes) or chain (latest block via ETH_RPC_URL)",
    )
    parser.add_argument("--watch", action="store_true", help="Keep polling instead of printing once")
    parser.add_argument("--interval", type=float, default=5.0, help="Poll interval seconds")
    args = parser.parse_args()

    if args.source == "gaps":
        found = watch_gaps(args.interval, once=not args.watch)
        sys.exit(1 if found and not args.watch else 0)
    else:
        watch_chain(args.interval)


if __name__ == "__main__":
    main()
