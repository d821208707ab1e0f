"""Seed database with demo data."""
from immunopass.database import SessionLocal
from immunopass.models import Organization, Account
import uuid


def seed():
    """Seed database with demo data."""
    db = SessionLocal()

    try:
        # Create organization
        org = Organization(
            id=uuid.UUID('00000000-0000-0000-0000-000000000001'),
            name="Demo Organization",
            status="ACTIVE",
            total_vouchers=100,
            alloted_vouchers=0,
        )
        db.add(org)
        db.flush()

        # Create accounts
        accounts_data = [
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000101'),
                'identifier': '9876543210',
                'identifier_type': 'MOBILE',
                'account_type': 'ORGANIZATION',
                'organization_id': org.id,
                'name': 'Demo Admin',
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000102'),
                'identifier': 'hr@demo.example',
                'identifier_type': 'EMAIL',
                'account_type': 'ORGANIZATION',
                'organization_id': org.id,
                'name': 'Demo HR',
            },
            {
                'id': uuid.UUID('00000000-0000-0000-0000-000000000103'),
                'identifier': '9123456789',
                'identifier_type': 'MOBILE',
                'account_type': 'PATHOLOGY_LAB',
                'pathology_lab_id': uuid.UUID('00000000-0000-0000-0000-000000000201'),
                'name': 'Demo Lab',
            },
        ]

        for account_data in accounts_data:
            db.add(Account(is_active=True, **account_data))

        db.commit()
        print("✅ Database seeded successfully!")
        print("\nDemo accounts (log in with OTP):")
        print("  9876543210 (MOBILE, ORGANIZATION)")
        print("  hr@demo.example (EMAIL, ORGANIZATION)")
        print("  9123456789 (MOBILE, PATHOLOGY_LAB)")

    except Exception as e:
        db.rollback()
        print(f"❌ Error seeding database: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed()
