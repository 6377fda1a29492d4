"""Auth Pydantic models"""

from typing import Optional

from pydantic import BaseModel

from app.tiers import Tier


class User(BaseModel):
    id: int
    email: str
    tier: Tier = Tier.FREE
    github_login: Optional[str] = None
    github_token: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: dict) -> "User":
        return cls(
            id=row["id"],
            email=row["email"],
            tier=Tier.parse(row.get("tier")),
            github_login=row.get("github_login"),
            github_token=row.get("github_token"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
