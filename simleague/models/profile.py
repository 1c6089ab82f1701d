from sqlalchemy import Column, String, Boolean

from simleague.db.base import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, index=True)  # identity provider user id
    email = Column(String, nullable=True, index=True)
    display_name = Column(String, nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
