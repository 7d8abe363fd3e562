"""Abertura e consulta de ordens de trabalho (manutenções e relatórios de falha)."""
import logging
from datetime import date, datetime
from typing import Iterable, List, Optional, Tuple

from sqlmodel import Session, select

from mantencion_pro.database import atomic
from mantencion_pro.errors import NotFound, ValidationError
from mantencion_pro.models import (
    Equipment,
    MaintenanceType,
    OperationalStatus,
    Priority,
    StatusHistoryEntry,
    TicketCounter,
    User,
    WorkOrder,
    WorkOrderKind,
    WorkOrderStatus,
)
from mantencion_pro.stock import apply_consumption, order_parts
from mantencion_pro.transitions import actor_label

logger = logging.getLogger(__name__)

TICKET_COUNTER = "tickets"


def get_work_order(session: Session, work_order_id: int) -> WorkOrder:
    order = session.get(WorkOrder, work_order_id)
    if order is None:
        raise NotFound(f"Orden {work_order_id} no encontrada")
    return order


def order_history(session: Session, order_id: int) -> List[StatusHistoryEntry]:
    return list(session.exec(
        select(StatusHistoryEntry)
        .where(StatusHistoryEntry.order_id == order_id)
        .order_by(StatusHistoryEntry.timestamp, StatusHistoryEntry.id)
    ).all())


def work_order_document(session: Session, order: WorkOrder) -> dict:
    """Ordem no formato persistido (chaves em espanhol), com peças e histórico."""
    doc = {
        "id": order.id,
        "tipoRegistro": order.kind.value,
        "equipo": order.equipment_label,
        "equipoId": order.equipment_id,
        "tipo": order.maintenance_type.value,
        "descripcion": order.description,
        "fecha": order.order_date.isoformat(),
        "estado": order.status.value,
        "kilometraje": order.mileage,
        "mecanico": order.mechanic,
        "fechaCompletado": order.completed_date.isoformat() if order.completed_date else None,
        "repuestos": [entry.as_document() for entry in order_parts(session, order.id)],
        "historial": [entry.as_document() for entry in order_history(session, order.id)],
    }
    if order.kind == WorkOrderKind.FAILURE_REPORT:
        doc.update({
            "numeroTicket": order.ticket_number,
            "titulo": order.title,
            "prioridad": order.priority.value if order.priority else None,
            "usuarioId": order.reporter_id,
            "usuarioEmail": order.reporter_email,
            "tecnicoAsignado": order.assigned_technician,
        })
    return doc


def list_work_orders(
    session: Session,
    kind: Optional[WorkOrderKind] = None,
    status: Optional[WorkOrderStatus] = None,
    maintenance_type: Optional[MaintenanceType] = None,
    equipment_id: Optional[int] = None,
    reporter_id: Optional[str] = None,
) -> List[WorkOrder]:
    query = select(WorkOrder)
    if kind is not None:
        query = query.where(WorkOrder.kind == kind)
    if status is not None:
        query = query.where(WorkOrder.status == status)
    if maintenance_type is not None:
        query = query.where(WorkOrder.maintenance_type == maintenance_type)
    if equipment_id is not None:
        query = query.where(WorkOrder.equipment_id == equipment_id)
    if reporter_id is not None:
        query = query.where(WorkOrder.reporter_id == reporter_id)
    query = query.order_by(WorkOrder.created_at.desc(), WorkOrder.id.desc())
    return list(session.exec(query).all())


def next_ticket_number(session: Session) -> int:
    """Incrementa o contador de tickets dentro da transação corrente."""
    counter = session.get(TicketCounter, TICKET_COUNTER)
    if counter is None:
        counter = TicketCounter(name=TICKET_COUNTER, last_value=0)
    counter.last_value += 1
    session.add(counter)
    return counter.last_value


def create_maintenance(
    session: Session,
    actor: User,
    description: str,
    maintenance_type=MaintenanceType.PREVENTIVE,
    equipment_id: Optional[int] = None,
    equipment_label: str = "",
    mileage: Optional[int] = None,
    mechanic: str = "",
    order_date: Optional[date] = None,
    parts: Iterable[Tuple[int, int]] = (),
) -> WorkOrder:
    """
    Registra uma manutenção pendente. `parts` é uma lista de (part_id, quantidade)
    consumida na mesma transação; se alguma peça faltar nada é gravado.
    Com equipamento vinculado, atualiza a quilometragem e a data da última manutenção.
    """
    try:
        maintenance_type = MaintenanceType(maintenance_type)
    except ValueError:
        raise ValidationError(f"Tipo de mantenimiento desconocido: {maintenance_type}") from None
    if not description or not (equipment_id or equipment_label):
        raise ValidationError("Por favor complete los campos obligatorios")
    if mileage is not None and mileage < 0:
        raise ValidationError("Kilometraje inválido")
    order_date = order_date or date.today()

    with atomic(session):
        equipment = None
        if equipment_id is not None:
            equipment = session.get(Equipment, equipment_id)
            if equipment is None:
                raise NotFound(f"Equipo {equipment_id} no encontrado")
            equipment_label = equipment_label or equipment.label

        order = WorkOrder(
            kind=WorkOrderKind.MAINTENANCE,
            equipment_id=equipment_id,
            equipment_label=equipment_label,
            maintenance_type=maintenance_type,
            description=description,
            order_date=order_date,
            mileage=mileage,
            mechanic=mechanic or actor.name or actor_label(actor),
            status=WorkOrderStatus.PENDING,
        )
        session.add(order)
        session.flush()
        session.add(StatusHistoryEntry(
            order_id=order.id, status=WorkOrderStatus.PENDING,
            actor=actor_label(actor), comment="Mantenimiento registrado",
        ))
        for part_id, quantity in parts:
            apply_consumption(session, order, part_id, None, quantity)

        if equipment is not None:
            if mileage and mileage > equipment.mileage:
                equipment.mileage = mileage
            equipment.last_maintenance_date = order_date
            equipment.updated_at = datetime.now()
            session.add(equipment)

    session.refresh(order)
    logger.info("Manutenção %s registrada para %s", order.id, order.equipment_label)
    return order


def create_failure_report(
    session: Session,
    reporter: User,
    title: str,
    description: str,
    equipment_id: int,
    priority=Priority.MEDIUM,
) -> WorkOrder:
    """Registra uma falha reportada por um motorista e gera o número do ticket."""
    if not title or not description or not equipment_id:
        raise ValidationError("Por favor complete todos los campos")
    try:
        priority = Priority(priority)
    except ValueError:
        raise ValidationError(f"Prioridad desconocida: {priority}") from None

    with atomic(session):
        equipment = session.get(Equipment, equipment_id)
        if equipment is None:
            raise NotFound("Equipo no encontrado")
        if equipment.operational_status != OperationalStatus.OPERATIONAL:
            raise ValidationError(f"El equipo {equipment.number} no está operativo")

        order = WorkOrder(
            kind=WorkOrderKind.FAILURE_REPORT,
            equipment_id=equipment.id,
            equipment_label=equipment.label,
            maintenance_type=MaintenanceType.CORRECTIVE,
            title=title,
            description=description,
            priority=priority,
            ticket_number=next_ticket_number(session),
            reporter_id=reporter.uid,
            reporter_email=reporter.email,
            status=WorkOrderStatus.PENDING,
        )
        session.add(order)
        session.flush()
        session.add(StatusHistoryEntry(
            order_id=order.id, status=WorkOrderStatus.PENDING,
            actor=actor_label(reporter), comment="Falla reportada",
        ))

    session.refresh(order)
    logger.info("Falha reportada: ticket #%s (%s)", order.ticket_number, order.equipment_label)
    return order
