"""Máquina de estados das ordens de trabalho.

Todas as mudanças de status passam por `transition`, que consulta a tabela
TRANSITIONS, grava o histórico e aplica os efeitos da conclusão (equipamento
e registro de falha arrumada) na mesma transação.
"""
import logging
from datetime import date, datetime
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlmodel import Session

from mantencion_pro import config
from mantencion_pro.database import atomic, compare_and_swap
from mantencion_pro.errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from mantencion_pro.models import (
    AvailabilityStatus,
    Equipment,
    FixedRecord,
    MaintenanceType,
    OperationalStatus,
    Role,
    StatusHistoryEntry,
    User,
    WorkOrder,
    WorkOrderKind,
    WorkOrderStatus,
)
from mantencion_pro.stock import order_parts

logger = logging.getLogger(__name__)

PENDING = WorkOrderStatus.PENDING
IN_PROGRESS = WorkOrderStatus.IN_PROGRESS
COMPLETED = WorkOrderStatus.COMPLETED
CANCELLED = WorkOrderStatus.CANCELLED

# estado atual -> estados permitidos, por tipo de ordem
TRANSITIONS = {
    WorkOrderKind.MAINTENANCE: {
        PENDING: frozenset({IN_PROGRESS}),
        IN_PROGRESS: frozenset({COMPLETED}),
    },
    WorkOrderKind.FAILURE_REPORT: {
        PENDING: frozenset({IN_PROGRESS, COMPLETED, CANCELLED}),
        IN_PROGRESS: frozenset({COMPLETED, CANCELLED}),
        COMPLETED: frozenset({PENDING}),
    },
}

CANCEL_ROLES = frozenset({Role.ADMIN, Role.MECHANIC})


def allowed_transitions(kind: WorkOrderKind, status: WorkOrderStatus) -> frozenset:
    return TRANSITIONS[kind].get(status, frozenset())


def next_maintenance_date(today: date, maintenance_type: MaintenanceType) -> date:
    """Preventiva: +3 meses. Corretiva: +1 mês (revisão)."""
    if maintenance_type == MaintenanceType.PREVENTIVE:
        months = config.PREVENTIVE_INTERVAL_MONTHS
    else:
        months = config.CORRECTIVE_INTERVAL_MONTHS
    return today + relativedelta(months=months)


def actor_label(actor: User) -> str:
    return actor.email or actor.uid


def _complete_equipment(session: Session, order: WorkOrder, today: date) -> Optional[Equipment]:
    if order.equipment_id is None:
        return None
    equipment = session.get(Equipment, order.equipment_id)
    if equipment is None:
        logger.warning("Equipamento %s da ordem %s não existe mais; cascata ignorada", order.equipment_id, order.id)
        return None
    if order.mileage is not None:
        # O hodômetro nunca volta; ordens antigas só registram o km da manutenção
        if order.mileage > equipment.mileage:
            equipment.mileage = order.mileage
        equipment.last_maintenance_km = order.mileage
    equipment.last_maintenance_date = today
    equipment.next_maintenance_date = next_maintenance_date(today, order.maintenance_type)
    equipment.operational_status = OperationalStatus.OPERATIONAL
    equipment.availability_status = AvailabilityStatus.AVAILABLE
    equipment.availability_reason = ""
    equipment.limitations = ""
    equipment.estimated_completion = ""
    equipment.updated_at = datetime.now()
    session.add(equipment)
    return equipment


def _archive_fixed_report(session: Session, order: WorkOrder, mechanic: str, comment: str) -> FixedRecord:
    record = FixedRecord(
        original_report_id=order.id,
        ticket_number=order.ticket_number,
        title=order.title,
        description=order.description,
        equipment_id=order.equipment_id,
        equipment_label=order.equipment_label,
        parts=[entry.as_document() for entry in order_parts(session, order.id)],
        mechanic=mechanic,
        comment=comment,
    )
    session.add(record)
    return record


def transition(session: Session, work_order_id: int, new_status, actor: User, comment: str = "", today: Optional[date] = None) -> WorkOrder:
    """
    Muda o status da ordem e devolve a ordem atualizada.

    - rejeita transições fora da tabela com InvalidTransition;
    - cancelar exige papel de mecânico ou admin;
    - acrescenta exatamente uma entrada ao histórico;
    - ao concluir: atualiza o equipamento vinculado e, se for um relatório de
      falha, cria o registro arquivado (FixedRecord).
    """
    try:
        new_status = WorkOrderStatus(new_status)
    except ValueError:
        raise ValidationError(f"Estado desconocido: {new_status}") from None
    today = today or date.today()

    with atomic(session):
        order = session.get(WorkOrder, work_order_id)
        if order is None:
            raise NotFound(f"Orden {work_order_id} no encontrada")
        current = order.status
        if new_status not in allowed_transitions(order.kind, current):
            raise InvalidTransition(current.value, new_status.value)
        if new_status == CANCELLED and actor.role not in CANCEL_ROLES:
            raise PermissionDenied("Solo mecánicos o administradores pueden cancelar una falla")

        label = actor_label(actor)
        session.add(StatusHistoryEntry(
            order_id=order.id, status=new_status, actor=label, comment=comment or "",
        ))

        changes = {"status": new_status}
        if new_status == COMPLETED:
            changes["completed_date"] = today
        elif current == COMPLETED:
            changes["completed_date"] = None
        technician = order.assigned_technician
        if order.kind == WorkOrderKind.FAILURE_REPORT:
            technician = actor.name or label
            changes["assigned_technician"] = technician

        if new_status == COMPLETED:
            _complete_equipment(session, order, today)
            if order.kind == WorkOrderKind.FAILURE_REPORT:
                _archive_fixed_report(session, order, order.mechanic or technician, comment or "")

        compare_and_swap(session, order, **changes)

    session.refresh(order)
    logger.info("Ordem %s: %s -> %s por %s", work_order_id, current.value, new_status.value, label)
    return order
