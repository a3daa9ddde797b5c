from datetime import datetime

import click

from kmercart.auth import DEFAULT_COMMISSION_RATE, hash_password, validate_password
from kmercart.errors import ValidationError
from kmercart.helpers import is_valid_email, normalize_email

TEST_PASSWORD = "Password123!"

TEST_VENDOR_PROFILE = {
    "businessName": "TechStore Premium",
    "businessDescription": "Premium electronics and gadgets",
    "businessAddress": {
        "street": "123 Business Street",
        "city": "Douala",
        "state": "Littoral",
        "zipCode": "12345",
        "country": "Cameroon",
    },
    "taxId": "TAX-123456",
    "bankAccount": {
        "accountNumber": "1234567890",
        "routingNumber": "987654321",
        "accountHolderName": "Jane Vendor",
    },
    "commissionRate": DEFAULT_COMMISSION_RATE,
    "isApproved": True,
    "rating": 0,
    "totalSales": 0,
}

TEST_ACCOUNTS = (
    {"email": "customer@test.com", "firstName": "John", "lastName": "Customer", "role": "customer"},
    {"email": "vendor@test.com", "firstName": "Jane", "lastName": "Vendor", "role": "vendor"},
    {"email": "admin@test.com", "firstName": "Admin", "lastName": "User", "role": "admin"},
)


def build_account(email, password, first_name, last_name, role, rounds):
    now = datetime.utcnow()
    account = {
        "email": normalize_email(email),
        "password": hash_password(password, rounds),
        "firstName": first_name,
        "lastName": last_name,
        "role": role,
        "isEmailVerified": True,
        "isActive": True,
        "createdAt": now,
        "updatedAt": now,
    }
    if role == "vendor":
        account["vendorProfile"] = {**TEST_VENDOR_PROFILE, "joinedDate": now}
    return account


def register_cli(app, db):
    @app.cli.command("seed-accounts")
    def seed_accounts():
        """Create the customer, vendor and admin test accounts."""
        for account in TEST_ACCOUNTS:
            if db.users.find_one({"email": account["email"]}, {"_id": 1}):
                click.echo(f"Skipping {account['role']}: {account['email']} (already exists)")
                continue
            db.users.insert_one(
                build_account(
                    account["email"],
                    TEST_PASSWORD,
                    account["firstName"],
                    account["lastName"],
                    account["role"],
                    app.config["BCRYPT_ROUNDS"],
                )
            )
            click.echo(f"Created {account['role']}: {account['email']}")
        click.echo(f"All test accounts use the password {TEST_PASSWORD}")

    @app.cli.command("create-vendor")
    @click.argument("email")
    @click.argument("password")
    @click.option("--first-name", default="Test")
    @click.option("--last-name", default="Vendor")
    def create_vendor(email, password, first_name, last_name):
        """Create a vendor account with an approved profile."""
        if not is_valid_email(email):
            raise click.BadParameter("Please provide a valid email address.", param_hint="EMAIL")
        try:
            validate_password(password)
        except ValidationError as exc:
            raise click.BadParameter(exc.message, param_hint="PASSWORD")
        if db.users.find_one({"email": normalize_email(email)}, {"_id": 1}):
            raise click.ClickException(f"{email} already exists.")
        db.users.insert_one(
            build_account(
                email, password, first_name, last_name, "vendor", app.config["BCRYPT_ROUNDS"]
            )
        )
        app.logger.info("Created vendor account %s from the command line", email)
        click.echo(f"Created vendor: {normalize_email(email)}")
