from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

# 모든 모델 클래스가 상속받을 Base 클래스
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    설정의 database_url로 SQLAlchemy 엔진을 생성합니다.

    SQLite는 요청 스레드마다 세션을 새로 만들기 때문에 check_same_thread를 끕니다.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    # autocommit=False, autoflush=False로 설정하여, 명시적으로 commit을 호출해야 DB에 반영됩니다.
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
