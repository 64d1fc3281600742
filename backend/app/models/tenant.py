from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class Tenant(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "tenants"

    name: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    is_active: bool = Field(default=True)
