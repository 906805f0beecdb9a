"""
Operator maintenance commands.
Run on the management host with the same environment as the API.

    python manage.py reset-password +19995550100 NewPass123
    python manage.py set-active +19995550100 no
    python manage.py set-role +19995550100 admin
    python manage.py add-location Germany Frankfurt DE --lat 50.11 --lon 8.68
    python manage.py assign-location node-eu-1 1
"""
import argparse
import asyncio
import sys

from vpn_control.config import Settings
from vpn_control.database import Database
from vpn_control.errors import ConfigError, ValidationError
from vpn_control.passwords import CredentialStore


async def reset_password(db: Database, settings: Settings, phone_number: str, new_password: str) -> bool:
    CredentialStore.check_policy(new_password)
    hashed = CredentialStore(rounds=settings.bcrypt_rounds).hash(new_password)
    return await db.update_account(phone_number, password_hash=hashed)


async def run(args) -> int:
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    db = Database(settings.database_url)
    print(f"Connecting to database at {settings.database_url.split('@')[-1]}...")
    try:
        await db.init_db()

        if args.command == "reset-password":
            try:
                ok = await reset_password(db, settings, args.phone_number, args.password)
            except ValidationError as e:
                print(f"Error: {e.message}")
                return 1
        elif args.command == "set-active":
            ok = await db.update_account(args.phone_number, active=args.active == "yes")
        elif args.command == "set-role":
            ok = await db.update_account(args.phone_number, role=args.role)
        elif args.command == "add-location":
            location = await db.add_location(args.country, args.city, args.country_code.upper(), args.lat, args.lon)
            print(f"Location {location.id} created: {location.city}, {location.country}")
            return 0
        else:  # assign-location
            if await db.get_endnode(args.server_id) is None:
                print(f"End-node '{args.server_id}' not found")
                return 1
            await db.update_endnode(args.server_id, location_id=args.location_id)
            print(f"End-node '{args.server_id}' assigned to location {args.location_id}")
            return 0
    finally:
        await db.dispose()

    if not ok:
        print(f"No account found for {args.phone_number}")
        return 1
    print(f"Account {args.phone_number} updated successfully!")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="VPN control plane maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("reset-password", help="Set a new password for an account")
    p.add_argument("phone_number")
    p.add_argument("password")

    p = sub.add_parser("set-active", help="Enable or disable an account")
    p.add_argument("phone_number")
    p.add_argument("active", choices=["yes", "no"])

    p = sub.add_parser("set-role", help="Change an account's role")
    p.add_argument("phone_number")
    p.add_argument("role", choices=["user", "admin"])

    p = sub.add_parser("add-location", help="Create a server location")
    p.add_argument("country")
    p.add_argument("city")
    p.add_argument("country_code")
    p.add_argument("--lat", type=float, default=None)
    p.add_argument("--lon", type=float, default=None)

    p = sub.add_parser("assign-location", help="Place an end-node in a location")
    p.add_argument("server_id")
    p.add_argument("location_id", type=int)
    return parser


if __name__ == "__main__":
    sys.exit(asyncio.run(run(build_parser().parse_args())))
