"""
Bootstrap data: the administrator actor and the default category set.

Both steps are idempotent; running the seed again changes nothing.
"""
from dataclasses import dataclass
from typing import Dict, List
import logging

from sqlalchemy.orm import Session

from app.models import KIND_EXPENSE, KIND_INCOME, ROLE_ADMIN, Category, User
from app.services.actor_service import register_actor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryTemplate:
    name: str
    kind: str
    description: str


DEFAULT_CATEGORIES = (
    CategoryTemplate("Salary", KIND_INCOME, "Monthly pay"),
    CategoryTemplate("Side income", KIND_INCOME, "Part-time work, allowances"),
    CategoryTemplate("Investment income", KIND_INCOME, "Dividends, interest"),
    CategoryTemplate("Other income", KIND_INCOME, "Other income"),
    CategoryTemplate("Food", KIND_EXPENSE, "Meals, groceries"),
    CategoryTemplate("Transport", KIND_EXPENSE, "Public transport, fuel"),
    CategoryTemplate("Housing", KIND_EXPENSE, "Rent, maintenance fees, utilities"),
    CategoryTemplate("Medical", KIND_EXPENSE, "Hospital, pharmacy"),
    CategoryTemplate("Education", KIND_EXPENSE, "Courses, books"),
    CategoryTemplate("Culture", KIND_EXPENSE, "Movies, shows, hobbies"),
    CategoryTemplate("Shopping", KIND_EXPENSE, "Clothing, household goods"),
    CategoryTemplate("Other expenses", KIND_EXPENSE, "Other expenses"),
)


class SeedService:
    def __init__(self, db: Session):
        self.db = db

    def ensure_admin(self, email: str, password: str, name: str = "Administrator") -> User:
        existing = self.db.query(User).filter(User.email == email.strip().lower()).first()
        if existing:
            return existing
        return register_actor(self.db, email, password, name, role=ROLE_ADMIN)

    def ensure_default_categories(self) -> List[Category]:
        """Create the default categories when the table is empty."""
        if self.db.query(Category.id).first() is not None:
            logger.info("Categories already present; skipping default categories")
            return []

        categories = [
            Category(name=template.name, kind=template.kind, description=template.description)
            for template in DEFAULT_CATEGORIES
        ]
        self.db.add_all(categories)
        self.db.commit()
        for category in categories:
            self.db.refresh(category)
        logger.info(f"Created {len(categories)} default categories")
        return categories

    def run(self, admin_email: str, admin_password: str) -> Dict[str, object]:
        admin = self.ensure_admin(admin_email, admin_password)
        categories = self.ensure_default_categories()
        return {"admin_id": admin.id, "categories_created": len(categories)}
