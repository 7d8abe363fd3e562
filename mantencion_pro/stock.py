"""Livro de estoque de peças e o fluxo de consumo de peças nas ordens.

Cada consumo faz duas escritas (linha da ordem + saldo da peça) dentro da
mesma transação; as duas usam o token `version` para detectar gravações
concorrentes.
"""
import logging
from typing import List, Optional

from sqlmodel import Session, select

from mantencion_pro.database import atomic, compare_and_swap
from mantencion_pro.errors import (
    InsufficientStock,
    NotFound,
    ValidationError,
    WorkOrderClosed,
)
from mantencion_pro.models import Part, WorkOrder, WorkOrderPart

logger = logging.getLogger(__name__)


# --- Adaptador do saldo (stock / cantidad) ---

def available_stock(record) -> int:
    """
    Saldo de uma peça, aceitando o modelo ou um documento legado.
    Documentos antigos trazem `stock`, `cantidad` ou nenhum dos dois.
    """
    if isinstance(record, Part):
        return max(0, record.stock or 0)
    value = record.get("stock")
    if value is None:
        value = record.get("cantidad")
    if value is None:
        return 0
    return max(0, int(value))


def part_from_document(doc: dict) -> Part:
    """Constrói uma Part a partir do formato persistido em espanhol."""
    return Part(
        name=(doc.get("nombre") or "").strip(),
        code=doc.get("codigo") or None,
        stock=available_stock(doc),
        minimum=max(0, int(doc.get("minimo") or 0)),
        category=doc.get("categoria") or "",
        location=doc.get("ubicacion") or "",
        supplier=doc.get("proveedor") or "",
        unit=doc.get("unidad") or "",
    )


# --- Consultas ---

def get_part(session: Session, part_id: int) -> Part:
    part = session.get(Part, part_id)
    if part is None:
        raise NotFound(f"Repuesto {part_id} no encontrado")
    return part


def order_parts(session: Session, order_id: int) -> List[WorkOrderPart]:
    """Peças consumidas pela ordem, na ordem de consumo."""
    return list(session.exec(
        select(WorkOrderPart)
        .where(WorkOrderPart.order_id == order_id)
        .order_by(WorkOrderPart.position, WorkOrderPart.id)
    ).all())


def low_stock_parts(session: Session) -> List[Part]:
    return list(session.exec(
        select(Part).where(Part.stock <= Part.minimum).order_by(Part.name)
    ).all())


def part_usage(session: Session, part_id: int) -> dict:
    """
    Histórico de uso de uma peça: cada ordem que a consumiu e o total usado.
    """
    part = get_part(session, part_id)
    rows = session.exec(
        select(WorkOrderPart, WorkOrder)
        .where(WorkOrderPart.part_id == part_id, WorkOrderPart.order_id == WorkOrder.id)
        .order_by(WorkOrder.order_date.desc(), WorkOrder.id.desc())
    ).all()
    records = [
        {
            "mantenimientoId": order.id,
            "fecha": order.order_date.isoformat(),
            "camionId": order.equipment_id,
            "equipo": order.equipment_label,
            "cantidad": entry.quantity,
            "descripcion": order.description or "Sin descripción",
            "kilometraje": order.mileage or 0,
            "tipo": order.maintenance_type.value,
        }
        for entry, order in rows
    ]
    return {
        "repuesto": part.as_document(),
        "registros": records,
        "totalUtilizado": sum(r["cantidad"] for r in records),
    }


# --- Consumo de peças ---

def apply_consumption(session: Session, order: WorkOrder, part_id: int, part_name: Optional[str], requested_qty: int) -> WorkOrderPart:
    """Aplica um consumo sem commit; quem chama controla a transação."""
    if requested_qty is None or requested_qty < 1:
        raise ValidationError("La cantidad debe ser positiva")
    if order.is_closed:
        raise WorkOrderClosed(f"La orden {order.id} está {order.status.value} y no acepta nuevos repuestos")

    part = get_part(session, part_id)
    name = part_name or part.name
    available = available_stock(part)

    entries = order_parts(session, order.id)
    existing = next((e for e in entries if e.part_id == part_id), None)

    # Regra herdada: compara o já consumido pela ordem com o saldo atual
    if existing is not None and existing.quantity >= available:
        raise InsufficientStock(name, available, requested_qty)
    if existing is None and available <= 0:
        raise InsufficientStock(name, available, requested_qty)
    # O saldo nunca pode ficar negativo
    if requested_qty > available:
        raise InsufficientStock(name, available, requested_qty)

    if existing is not None:
        existing.quantity += requested_qty
        entry = existing
    else:
        next_position = max((e.position for e in entries), default=-1) + 1
        entry = WorkOrderPart(
            order_id=order.id, part_id=part_id, name=name,
            quantity=requested_qty, position=next_position,
        )
    session.add(entry)

    compare_and_swap(session, part, stock=max(0, available - requested_qty))
    compare_and_swap(session, order)
    return entry


def consume_part(session: Session, work_order_id: int, part_id: int, part_name: Optional[str] = None, requested_qty: int = 1) -> WorkOrderPart:
    """
    Registra o consumo de `requested_qty` unidades da peça na ordem e baixa o estoque.

    Levanta NotFound, InsufficientStock, WorkOrderClosed, ConcurrentUpdate ou
    RemoteUnavailable. Em qualquer erro nada é gravado. Chamadas repetidas
    consomem de novo (não é idempotente).
    """
    with atomic(session):
        order = session.get(WorkOrder, work_order_id)
        if order is None:
            raise NotFound(f"Orden {work_order_id} no encontrada")
        entry = apply_consumption(session, order, part_id, part_name, requested_qty)
    session.refresh(entry)
    logger.info(
        "Consumo registrado: ordem=%s peça=%s qtd=%s (total na ordem=%s)",
        work_order_id, part_id, requested_qty, entry.quantity,
    )
    return entry


def release_part(session: Session, work_order_id: int, part_id: int) -> int:
    """
    Remove a peça da ordem e devolve a quantidade ao estoque (estorno).
    Retorna a quantidade devolvida.
    """
    with atomic(session):
        order = session.get(WorkOrder, work_order_id)
        if order is None:
            raise NotFound(f"Orden {work_order_id} no encontrada")
        if order.is_closed:
            raise WorkOrderClosed(f"La orden {order.id} está {order.status.value} y no puede modificarse")
        entry = next((e for e in order_parts(session, order.id) if e.part_id == part_id), None)
        if entry is None:
            raise NotFound(f"El repuesto {part_id} no está en la orden {work_order_id}")
        quantity = entry.quantity

        # Estorno de estoque (se a peça ainda existir no cadastro)
        part = session.get(Part, part_id)
        if part is not None:
            compare_and_swap(session, part, stock=available_stock(part) + quantity)
        else:
            logger.warning("Peça %s excluída; estorno de %s unidades ignorado", part_id, quantity)
        session.delete(entry)
        compare_and_swap(session, order)
    logger.info("Peça %s removida da ordem %s (%s unidades devolvidas)", part_id, work_order_id, quantity)
    return quantity


# --- Ajustes manuais ---

def adjust_stock(session: Session, part_id: int, new_quantity: int) -> Part:
    """Define o saldo manualmente (nunca abaixo de zero)."""
    with atomic(session):
        part = get_part(session, part_id)
        compare_and_swap(session, part, stock=max(0, int(new_quantity)))
    session.refresh(part)
    logger.info("Saldo da peça %s ajustado para %s", part_id, part.stock)
    return part


def increment_stock(session: Session, part_id: int) -> Part:
    return adjust_stock(session, part_id, available_stock(get_part(session, part_id)) + 1)


def decrement_stock(session: Session, part_id: int) -> Part:
    part = get_part(session, part_id)
    available = available_stock(part)
    if available <= 0:
        raise InsufficientStock(part.name, available, 1)
    return adjust_stock(session, part_id, available - 1)
