from decimal import Decimal

from sqlalchemy import select

from canteen.db import SessionLocal
from canteen.models import Product, Profile, StoreSetting, User, UserRole
from canteen.security.passwords import hash_password
from canteen.services.store_status_service import default_store_settings, update_store_settings

DEMO_PRODUCTS = [
    ('Masala Dosa', '1 plate', Decimal('80'), 'Breakfast'),
    ('Idli Vada', '2 idli + 1 vada', Decimal('60'), 'Breakfast'),
    ('Veg Thali', '1 plate', Decimal('150'), 'Meals'),
    ('Paneer Biryani', '1 bowl', Decimal('220'), 'Meals'),
    ('Filter Coffee', '150 ml', Decimal('30'), 'Beverages'),
    ('Masala Chai', '150 ml', Decimal('20'), 'Beverages'),
]


def _ensure_user(db, *, email: str, password: str, role: UserRole) -> User:
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user:
        user = User(email=email, password_hash=hash_password(password), role=role, active=True)
        db.add(user)
        db.flush()
    return user


def seed() -> None:
    with SessionLocal() as db:
        admin = _ensure_user(db, email='admin@example.com', password='adminpass', role=UserRole.ADMIN)
        customer = _ensure_user(db, email='customer@example.com', password='customerpass', role=UserRole.CUSTOMER)

        if db.get(Profile, customer.id) is None:
            db.add(
                Profile(
                    user_id=customer.id,
                    full_name='Demo Customer',
                    phone='9876543210',
                    address='12 MG Road, Bengaluru',
                )
            )

        existing = set(db.execute(select(Product.name)).scalars().all())
        for name, quantity_label, price, category in DEMO_PRODUCTS:
            if name not in existing:
                db.add(Product(name=name, quantity_label=quantity_label, price=price, category=category, active=True))

        if db.execute(select(StoreSetting.setting_key).limit(1)).first() is None:
            defaults = default_store_settings()
            update_store_settings(
                db,
                updated_by_user_id=admin.id,
                open_time=defaults.open_time,
                close_time=defaults.close_time,
                force_status=defaults.force_status.value,
                closed_message=defaults.closed_message,
            )

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
