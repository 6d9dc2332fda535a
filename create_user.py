"""Create an NGO, donor or volunteer account from the command line.

Usage:
    python create_user.py --role NGO --email ngo@example.org --name "Relief Org" --password secret123
"""
import argparse
import sys

from extensions import db
from app import create_app
from models import Role, User


def create_user(email: str, name: str, password: str, role: Role,
                wallet_address: str = None, organization_name: str = None) -> int:
    """Create the user and return its id; exits non-zero if the email is taken."""
    app = create_app()

    with app.app_context():
        existing = User.query.filter_by(email=email.lower()).first()
        if existing:
            print(f"User already exists: {existing.email} ({existing.role})", file=sys.stderr)
            sys.exit(1)

        user = User(
            name=name,
            email=email.lower(),
            role=role.value,
            wallet_address=wallet_address,
            organization_name=organization_name,
        )
        user.set_password(password)

        db.session.add(user)
        db.session.commit()

        print(f"Created {user.role} user {user.email} with id {user.id}")
        return user.id


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a HelpChain user")
    parser.add_argument("--role", choices=[r.value for r in Role], required=True)
    parser.add_argument("--email", required=True)
    parser.add_argument("--name", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--wallet", default=None, help="0x-prefixed ledger address")
    parser.add_argument("--organization", default=None, help="Organization name (NGOs)")
    args = parser.parse_args()

    create_user(args.email, args.name, args.password, Role(args.role), args.wallet, args.organization)


if __name__ == "__main__":
    main()
