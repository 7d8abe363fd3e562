"""Assinaturas ao vivo: cada alteração numa coleção reenvia o snapshot completo.

As rotas chamam `hub.publish(colecao)` depois do commit; cada assinante
recebe o aviso na fila do seu próprio event loop e relê a coleção.
"""
import asyncio
import logging
import threading
from collections import defaultdict

from sqlmodel import Session, select

from mantencion_pro.models import Equipment, FixedRecord, Part, WorkOrder, WorkOrderKind
from mantencion_pro.orders import work_order_document

logger = logging.getLogger(__name__)


def _parts(session):
    return [p.as_document() for p in session.exec(select(Part).order_by(Part.name)).all()]


def _equipment(session):
    return [e.as_document() for e in session.exec(select(Equipment).order_by(Equipment.number)).all()]


def _orders(kind):
    def load(session):
        orders = session.exec(
            select(WorkOrder).where(WorkOrder.kind == kind).order_by(WorkOrder.created_at.desc(), WorkOrder.id.desc())
        ).all()
        return [work_order_document(session, o) for o in orders]
    return load


def _fixed_records(session):
    return [r.as_document() for r in session.exec(select(FixedRecord).order_by(FixedRecord.id.desc())).all()]


SNAPSHOT_LOADERS = {
    "repuestos": _parts,
    "equipos": _equipment,
    "mantenimientos": _orders(WorkOrderKind.MAINTENANCE),
    "fallas": _orders(WorkOrderKind.FAILURE_REPORT),
    "arregladas": _fixed_records,
}


def load_snapshot(session: Session, collection: str) -> list:
    return SNAPSHOT_LOADERS[collection](session)


class Subscription:
    def __init__(self, hub, collection, loop):
        self.hub = hub
        self.collection = collection
        self.loop = loop
        self.queue = asyncio.Queue()
        self.cancelled = False

    async def wait(self):
        """Espera a próxima alteração da coleção."""
        return await self.queue.get()

    def cancel(self):
        self.cancelled = True
        self.hub._remove(self)


class SnapshotHub:
    def __init__(self):
        self._subscribers = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, collection: str) -> Subscription:
        if collection not in SNAPSHOT_LOADERS:
            raise KeyError(collection)
        subscription = Subscription(self, collection, asyncio.get_running_loop())
        with self._lock:
            self._subscribers[collection].append(subscription)
        return subscription

    def _remove(self, subscription):
        with self._lock:
            subs = self._subscribers.get(subscription.collection, [])
            if subscription in subs:
                subs.remove(subscription)

    def subscriber_count(self, collection: str) -> int:
        with self._lock:
            return len(self._subscribers.get(collection, []))

    def publish(self, *collections: str):
        """Avisa os assinantes; pode ser chamado de qualquer thread."""
        for collection in collections:
            with self._lock:
                subs = list(self._subscribers.get(collection, []))
            for sub in subs:
                try:
                    sub.loop.call_soon_threadsafe(sub.queue.put_nowait, collection)
                except RuntimeError:
                    # loop já encerrado
                    logger.warning("Assinatura de %s descartada (loop encerrado)", collection)
                    sub.cancel()


hub = SnapshotHub()
