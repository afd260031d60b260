from sqlmodel import SQLModel, Session, create_engine
from .config import DATABASE_URL

# Register the table models on SQLModel.metadata
from .models.challenge_row import ChallengeRow  # noqa: F401
from .models.device import Device  # noqa: F401

# SQLAlchemy database engine
engine = create_engine(DATABASE_URL, pool_pre_ping=True)

def create_db_and_tables(bind=None):
    SQLModel.metadata.create_all(bind or engine)

def get_session():
    with Session(engine) as session:
        yield session
