from typing import List, Optional
from sqlmodel import Field, SQLModel, Column, JSON
from datetime import date, datetime
from enum import Enum

# --- Enums ---
class Role(str, Enum):
    """Papéis de usuário."""
    ADMIN = "admin"
    MECHANIC = "mecanico"
    DRIVER = "conductor"

class WorkOrderKind(str, Enum):
    MAINTENANCE = "mantenimiento"
    FAILURE_REPORT = "falla"

class MaintenanceType(str, Enum):
    PREVENTIVE = "preventivo"
    CORRECTIVE = "correctivo"

class WorkOrderStatus(str, Enum):
    """Status possíveis para uma Ordem de Trabalho."""
    PENDING = "pendiente"
    IN_PROGRESS = "en_proceso"
    COMPLETED = "completado"
    CANCELLED = "cancelado"

class OperationalStatus(str, Enum):
    OPERATIONAL = "Operativo"
    IN_MAINTENANCE = "En Mantenimiento"
    OUT_OF_SERVICE = "Fuera de Servicio"

class AvailabilityStatus(str, Enum):
    AVAILABLE = "disponible"
    PARTIAL = "parcial"
    UNAVAILABLE = "no_disponible"

class Priority(str, Enum):
    LOW = "baja"
    MEDIUM = "media"
    HIGH = "alta"

# --- Modelos de Dados (Tabelas) ---

class User(SQLModel, table=True):
    """
    Usuário da aplicação (motorista, mecânico ou administrador).
    O uid vem do provedor de autenticação.
    """
    uid: str = Field(primary_key=True)
    email: str
    name: Optional[str] = None
    role: Role = Field(default=Role.DRIVER)

    def as_document(self) -> dict:
        return {"uid": self.uid, "correo": self.email, "nombre": self.name, "rol": self.role.value}

class Part(SQLModel, table=True):
    """
    Representa uma peça (repuesto) no Estoque.
    `stock` é a única fonte da quantidade; `cantidad` só existe na saída.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    code: Optional[str] = None
    stock: int = Field(default=0, ge=0, description="Quantidade atual em estoque")
    minimum: int = Field(default=0, ge=0, description="Quantidade mínima para alerta")
    category: str = ""
    location: str = ""
    supplier: str = ""
    unit: str = ""
    version: int = Field(default=1, description="Token de concorrência otimista")
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_low_stock(self) -> bool:
        return self.stock <= self.minimum

    def as_document(self) -> dict:
        return {
            "id": self.id,
            "nombre": self.name,
            "codigo": self.code,
            "stock": self.stock,
            "cantidad": self.stock,
            "minimo": self.minimum,
            "categoria": self.category,
            "ubicacion": self.location,
            "proveedor": self.supplier,
            "unidad": self.unit,
        }

class Equipment(SQLModel, table=True):
    """
    Representa um equipamento da frota (caminhão).
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    number: str = Field(index=True, description="Número interno do caminhão")
    plate: str = Field(index=True, description="Placa")
    model: str = ""
    year: Optional[int] = None
    driver: Optional[str] = None
    mileage: int = Field(default=0, ge=0)
    last_maintenance_km: Optional[int] = None
    next_maintenance_km: Optional[int] = None
    last_maintenance_date: Optional[date] = None
    next_maintenance_date: Optional[date] = None
    operational_status: OperationalStatus = Field(default=OperationalStatus.OPERATIONAL)
    availability_status: AvailabilityStatus = Field(default=AvailabilityStatus.AVAILABLE)
    availability_reason: str = ""
    limitations: str = ""
    estimated_completion: str = ""
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def label(self) -> str:
        return f"Camión #{self.number} - {self.model}".rstrip(" -")

    def as_document(self) -> dict:
        return {
            "id": self.id,
            "numero": self.number,
            "placa": self.plate,
            "modelo": self.model,
            "anio": self.year,
            "conductor": self.driver,
            "kilometraje": self.mileage,
            "ultimoMantenimientoKm": self.last_maintenance_km,
            "proximoMantenimientoKm": self.next_maintenance_km,
            "ultimoMantenimiento": self.last_maintenance_date.isoformat() if self.last_maintenance_date else None,
            "proximoMantenimiento": self.next_maintenance_date.isoformat() if self.next_maintenance_date else None,
            "estado": self.operational_status.value,
            "estadoDisponibilidad": self.availability_status.value,
            "motivo": self.availability_reason,
            "limitaciones": self.limitations,
            "estimacionFinalizacion": self.estimated_completion,
        }

class WorkOrder(SQLModel, table=True):
    """
    Ordem de trabalho: manutenção (preventiva/corretiva) ou relatório de falha.
    As peças consumidas e o histórico ficam em tabelas próprias.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    kind: WorkOrderKind = Field(default=WorkOrderKind.MAINTENANCE, index=True)
    equipment_id: Optional[int] = Field(default=None, foreign_key="equipment.id", index=True)
    equipment_label: str = Field(default="", description="Texto do equipamento (desnormalizado)")
    maintenance_type: MaintenanceType = Field(default=MaintenanceType.CORRECTIVE)
    description: str = ""
    order_date: date = Field(default_factory=date.today)
    mileage: Optional[int] = Field(default=None, ge=0)
    mechanic: str = ""
    status: WorkOrderStatus = Field(default=WorkOrderStatus.PENDING, index=True)
    completed_date: Optional[date] = None
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    # Campos exclusivos de relatórios de falha
    ticket_number: Optional[int] = None
    title: Optional[str] = None
    priority: Optional[Priority] = None
    reporter_id: Optional[str] = None
    reporter_email: Optional[str] = None
    assigned_technician: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.status in (WorkOrderStatus.COMPLETED, WorkOrderStatus.CANCELLED)

class WorkOrderPart(SQLModel, table=True):
    """
    Peça consumida por uma ordem. `position` preserva a ordem de consumo.
    part_id não é chave estrangeira: a peça pode ser excluída depois.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="workorder.id", index=True)
    part_id: int = Field(index=True)
    name: str
    quantity: int = Field(ge=1)
    position: int = 0

    def as_document(self) -> dict:
        return {"id": self.part_id, "nombre": self.name, "cantidad": self.quantity}

class StatusHistoryEntry(SQLModel, table=True):
    """Entrada do histórico de status (somente inserção)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="workorder.id", index=True)
    status: WorkOrderStatus
    timestamp: datetime = Field(default_factory=datetime.now)
    actor: str
    comment: str = ""

    def as_document(self) -> dict:
        return {
            "estado": self.status.value,
            "fecha": self.timestamp.isoformat(),
            "usuario": self.actor,
            "comentario": self.comment,
        }

class FixedRecord(SQLModel, table=True):
    """
    Cópia de arquivo (arreglada) criada quando um relatório de falha é concluído.
    Nunca é alterada depois de criada.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    original_report_id: int = Field(index=True)
    ticket_number: Optional[int] = None
    title: Optional[str] = None
    description: str = ""
    equipment_id: Optional[int] = None
    equipment_label: str = ""
    parts: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    mechanic: str = ""
    comment: str = ""
    completed_at: datetime = Field(default_factory=datetime.now)

    def as_document(self) -> dict:
        return {
            "id": self.id,
            "originalReportId": self.original_report_id,
            "numeroTicket": self.ticket_number,
            "titulo": self.title,
            "descripcion": self.description,
            "equipoId": self.equipment_id,
            "equipo": self.equipment_label,
            "repuestos": list(self.parts or []),
            "mecanico": self.mechanic,
            "comentario": self.comment,
            "fechaCompletado": self.completed_at.isoformat(),
        }

class TicketCounter(SQLModel, table=True):
    """Contador sequencial dos tickets de falha."""
    name: str = Field(primary_key=True)
    last_value: int = 0
