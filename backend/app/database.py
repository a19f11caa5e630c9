from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_session_factory(database_url: str):
    """Créer l'engine et la fabrique de sessions pour le miroir durable."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Les routes tournent dans le threadpool FastAPI
        connect_args["check_same_thread"] = False

    engine = create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True
    )

    # Import nécessaire pour enregistrer les tables sur Base.metadata
    from app.models import payment_models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info(f"✅ Base de données prête: {engine.url.render_as_string(hide_password=True)}")

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine, SessionLocal
