import logging
import os

from dotenv import load_dotenv

# Carrega variáveis de ambiente do arquivo .env
load_dotenv()

# Banco padrão: arquivo SQLite local
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///mantencion.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Intervalos (em meses) para agendar a próxima manutenção ao concluir uma ordem
PREVENTIVE_INTERVAL_MONTHS = int(os.getenv("PREVENTIVE_INTERVAL_MONTHS", "3"))
CORRECTIVE_INTERVAL_MONTHS = int(os.getenv("CORRECTIVE_INTERVAL_MONTHS", "1"))


def setup_logging():
    """Configura o logging raiz uma única vez (chamado no startup)."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
