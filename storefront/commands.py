import os
from datetime import datetime

import click

from .auth import hash_password
from .helpers import is_valid_email, normalize_email


def register_commands(app, db):
    @app.cli.command("create-admin")
    @click.option("--email", default=lambda: os.getenv("ADMIN_EMAIL", ""), help="Admin email address.")
    @click.option("--password", default=lambda: os.getenv("ADMIN_PASSWORD", ""), help="Admin password.")
    @click.option("--full-name", default=lambda: os.getenv("ADMIN_FULL_NAME", "Admin User"), help="Display name.")
    def create_admin(email: str, password: str, full_name: str):
        """Create an admin account, or promote an existing user."""
        normalized_email = normalize_email(email)
        if not is_valid_email(normalized_email):
            raise click.BadParameter("A valid email is required", param_hint="--email")

        now = datetime.utcnow()
        existing = db.users.find_one({"email": normalized_email})
        if existing:
            db.users.update_one(
                {"_id": existing["_id"]},
                {"$set": {"role": "admin", "updated_at": now}},
            )
            click.echo(f"Promoted {normalized_email} to admin")
            return

        if len(password or "") < 8:
            raise click.BadParameter("Password must be at least 8 characters", param_hint="--password")

        db.users.insert_one(
            {
                "email": normalized_email,
                "password": hash_password(password),
                "full_name": (full_name or "Admin User").strip(),
                "phone": "",
                "role": "admin",
                "is_email_verified": True,
                "wishlist": [],
                "address": {},
                "created_at": now,
                "updated_at": now,
            }
        )
        click.echo(f"Created admin {normalized_email}")
