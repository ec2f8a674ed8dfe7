from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bomb_round.load_secrets import database_backend

if database_backend == "sqlite":
    from bomb_round.create_sqlite_engine import engine
else:
    from bomb_round.create_postgres_engine import engine

# Centralized session factory to avoid creating it in router modules.
Session = async_sessionmaker(
    autocommit=False,
    class_=AsyncSession,
    autoflush=True,
    bind=engine,
    expire_on_commit=False,
)
