import logging
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, create_engine, Session

from mantencion_pro import models  # noqa: F401  (registra as tabelas no metadata)
from mantencion_pro.config import DATABASE_URL
from mantencion_pro.errors import ConcurrentUpdate, MaintenanceError, RemoteUnavailable

logger = logging.getLogger(__name__)

# Configurações para SQLite (necessário para evitar erros de thread em alguns casos)
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)

def create_db_and_tables(bind=None):
    """
    Cria o banco de dados e todas as tabelas definidas nos modelos.
    Deve ser chamado na inicialização da aplicação.
    """
    SQLModel.metadata.create_all(bind or engine)

def get_session():
    """
    Dependência para obter uma sessão do banco de dados.
    Gerencia o ciclo de vida da sessão (abre e fecha automaticamente).
    """
    with Session(engine) as session:
        yield session

@contextmanager
def atomic(session: Session):
    """
    Executa o bloco como uma única transação.
    Qualquer erro desfaz todas as escritas; erros do banco viram RemoteUnavailable.
    """
    try:
        yield session
        session.commit()
    except MaintenanceError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Falha ao acessar o banco de dados")
        raise RemoteUnavailable("No se pudo acceder a la base de datos. Intente nuevamente.") from exc
    except Exception:
        session.rollback()
        raise

def compare_and_swap(session: Session, obj, **values):
    """
    UPDATE condicionado à versão lida em `obj`. Se outra sessão gravou o
    registro nesse meio tempo nenhuma linha é afetada e levantamos ConcurrentUpdate.
    """
    model = type(obj)
    obj_id, expected_version = obj.id, obj.version
    values.setdefault("updated_at", datetime.now())
    stmt = (
        update(model)
        .where(model.id == obj_id, model.version == expected_version)
        .values(version=expected_version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = session.exec(stmt)
    if result.rowcount != 1:
        logger.warning("Versão divergente em %s id=%s (esperada %s)", model.__name__, obj_id, expected_version)
        raise ConcurrentUpdate(
            f"El registro {model.__name__} #{obj_id} fue modificado por otro usuario. Recargue e intente nuevamente."
        )
    # Força recarga do objeto na próxima leitura
    session.expire(obj)
