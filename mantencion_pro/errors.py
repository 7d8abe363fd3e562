"""Erros de domínio do MantencionPRO.

Cada erro carrega o status HTTP com que deve ser exposto; o handler global
em `main.py` converte qualquer `MaintenanceError` em resposta.
"""


class MaintenanceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(MaintenanceError):
    """Peça, ordem, equipamento ou usuário referenciado não existe."""
    status_code = 404


class ValidationError(MaintenanceError):
    status_code = 400


class PermissionDenied(MaintenanceError):
    status_code = 403


class InsufficientStock(MaintenanceError):
    status_code = 409

    def __init__(self, part_name: str, available: int, requested: int):
        super().__init__(
            f"Stock insuficiente de {part_name}. Disponible: {available}, solicitado: {requested}"
        )
        self.part_name = part_name
        self.available = available
        self.requested = requested


class InvalidTransition(MaintenanceError):
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"Transición de estado inválida: {current} -> {requested}")
        self.current = current
        self.requested = requested


class WorkOrderClosed(MaintenanceError):
    """A ordem já foi concluída ou cancelada e não aceita novas peças."""
    status_code = 409


class ConcurrentUpdate(MaintenanceError):
    """O registro mudou entre a leitura e a escrita (versão divergente)."""
    status_code = 409


class DuplicateEquipment(MaintenanceError):
    status_code = 409


class RemoteUnavailable(MaintenanceError):
    """Falha ao falar com o banco de dados."""
    status_code = 503
