from sqlalchemy.orm import Session
from app.models.user import User
from app.models.product import Product
from app.core.security import ROLES

class UserCRUD:
    def create_user(self, db: Session, data):
        role = (data.get("role") or "agent").lower()
        if role not in ROLES:
            raise ValueError(f"Invalid role '{role}'. Must be one of {list(ROLES)}.")
        if db.query(User).filter(User.username == data["username"]).first():
            raise ValueError(f"Username '{data['username']}' already exists")
        user = User(
            username=data["username"],
            name=data.get("name") or data["username"],
            email=data.get("email"),
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    def get_users(self, db: Session, skip: int = 0, limit: int = 100):
        return db.query(User).order_by(User.id.asc()).offset(skip).limit(limit).all()

    def get_user(self, db: Session, user_id: int):
        return db.get(User, user_id)

    def get_by_username(self, db: Session, username: str):
        return db.query(User).filter(User.username == username).first()

class ProductCRUD:
    def create_product(self, db: Session, data):
        if db.query(Product).filter(Product.name == data["name"]).first():
            raise ValueError(f"Product '{data['name']}' already exists")
        product = Product(
            name=data["name"],
            category=data.get("category"),
            description=data.get("description"),
            owner=data.get("owner"),
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    def get_products(self, db: Session, active_only: bool = False):
        q = db.query(Product)
        if active_only:
            q = q.filter(Product.is_active == True)  # noqa: E712
        return q.order_by(Product.name.asc()).all()

    def get_product(self, db: Session, product_id: int):
        return db.get(Product, product_id)

    def get_by_name(self, db: Session, name: str):
        return db.query(Product).filter(Product.name == name).first()

    def update_product(self, db: Session, product_id: int, updates):
        product = self.get_product(db, product_id)
        if product:
            for key in ("name", "category", "description", "owner", "is_active"):
                if key in updates:
                    setattr(product, key, updates[key])
            db.commit()
            db.refresh(product)
        return product

# Create instances
user_crud = UserCRUD()
product_crud = ProductCRUD()
