# protocol_scheduler/repository.py
"""
Storage contract for templates, instances and occurrences.

Services never talk to a database directly; they read plain schema objects
from a `ProtocolRepository`, compute the next state and hand it back in a
single write call that carries the version token they read. The store
rejects the write with ConflictError when the token is stale, so two
writers racing on the same instance can never interleave partial changes.

`SqlAlchemyProtocolRepository` (crud.py) is the production store;
`InMemoryProtocolRepository` below backs tests and local tooling.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from . import schemas
from .errors import ConflictError, NotFoundError
from .models import InstanceStatus


class ProtocolRepository(ABC):

    # --- Templates ---
    @abstractmethod
    def create_template(self, template: schemas.ProtocolTemplate, audit: Optional[schemas.AuditEvent] = None) -> schemas.ProtocolTemplate:
        """Store a new template at version 1 and return it with its assigned id."""

    @abstractmethod
    def get_template(self, template_id: int, version: Optional[int] = None) -> schemas.ProtocolTemplate:
        """Return one template version (latest when `version` is None)."""

    @abstractmethod
    def list_templates(self) -> List[schemas.ProtocolTemplate]:
        """Latest version of every template."""

    @abstractmethod
    def add_template_version(self, template: schemas.ProtocolTemplate, expected_version: int,
                             audit: Optional[schemas.AuditEvent] = None) -> schemas.ProtocolTemplate:
        """Append `template` as version expected_version + 1; ConflictError if the latest moved on."""

    # --- Instances ---
    @abstractmethod
    def create_instance(self, instance: schemas.ProtocolInstance, occurrences: Sequence[schemas.Occurrence],
                        audit: Optional[schemas.AuditEvent] = None) -> schemas.ProtocolInstance:
        """Store a freshly materialized instance together with its occurrences."""

    @abstractmethod
    def get_instance(self, instance_id: int) -> schemas.ProtocolInstance:
        pass

    @abstractmethod
    def list_instances(self, patient_id: Optional[int] = None,
                       statuses: Optional[Iterable[InstanceStatus]] = None) -> List[schemas.ProtocolInstance]:
        pass

    @abstractmethod
    def save_instance(self, instance: schemas.ProtocolInstance, expected_version: int,
                      added: Sequence[schemas.Occurrence] = (),
                      updated: Sequence[schemas.Occurrence] = (),
                      deleted_ids: Sequence[int] = (),
                      audit: Optional[schemas.AuditEvent] = None) -> schemas.ProtocolInstance:
        """Atomically write the instance row and its occurrence changes.

        Returns the stored instance with its version bumped by one.
        """

    # --- Occurrences ---
    @abstractmethod
    def list_occurrences(self, instance_id: int, include_cancelled: bool = False) -> List[schemas.Occurrence]:
        """Occurrences of one instance ordered by (due_date, id)."""

    @abstractmethod
    def get_occurrence(self, occurrence_id: int) -> schemas.Occurrence:
        pass


class InMemoryProtocolRepository(ProtocolRepository):
    """Dictionary-backed store. Every read and write copies, so callers never alias stored state."""

    def __init__(self):
        self._template_versions: Dict[int, Dict[int, schemas.ProtocolTemplate]] = {}
        self._instances: Dict[int, schemas.ProtocolInstance] = {}
        self._occurrences: Dict[int, schemas.Occurrence] = {}
        self._next_template_id = 1
        self._next_instance_id = 1
        self._next_occurrence_id = 1
        self.audit_log: List[schemas.AuditEvent] = []

    def _audit(self, audit: Optional[schemas.AuditEvent], resource_id: Optional[int] = None):
        if audit is not None:
            entry = audit.model_copy(deep=True)
            if entry.resource_id is None:
                entry.resource_id = resource_id
            self.audit_log.append(entry)

    # --- Templates ---
    def create_template(self, template, audit=None):
        stored = template.model_copy(deep=True)
        stored.id = self._next_template_id
        stored.version = 1
        stored.created_at = datetime.now(timezone.utc)
        self._next_template_id += 1
        self._template_versions[stored.id] = {1: stored}
        self._audit(audit, stored.id)
        return stored.model_copy(deep=True)

    def get_template(self, template_id, version=None):
        versions = self._template_versions.get(template_id)
        if not versions:
            raise NotFoundError(f"Protocol template {template_id} not found")
        key = version if version is not None else max(versions)
        if key not in versions:
            raise NotFoundError(f"Protocol template {template_id} has no version {version}")
        return versions[key].model_copy(deep=True)

    def list_templates(self):
        return [self.get_template(template_id) for template_id in sorted(self._template_versions)]

    def add_template_version(self, template, expected_version, audit=None):
        versions = self._template_versions.get(template.id)
        if not versions:
            raise NotFoundError(f"Protocol template {template.id} not found")
        latest = max(versions)
        if latest != expected_version:
            raise ConflictError(
                f"Protocol template {template.id} is at version {latest}, not {expected_version}"
            )
        stored = template.model_copy(deep=True)
        stored.version = latest + 1
        stored.created_at = datetime.now(timezone.utc)
        versions[stored.version] = stored
        self._audit(audit, stored.id)
        return stored.model_copy(deep=True)

    # --- Instances ---
    def create_instance(self, instance, occurrences, audit=None):
        stored = instance.model_copy(deep=True)
        stored.id = self._next_instance_id
        stored.version = 1
        self._next_instance_id += 1
        self._instances[stored.id] = stored
        self._insert_occurrences(stored.id, occurrences)
        self._audit(audit, stored.id)
        return stored.model_copy(deep=True)

    def get_instance(self, instance_id):
        instance = self._instances.get(instance_id)
        if instance is None:
            raise NotFoundError(f"Protocol instance {instance_id} not found")
        return instance.model_copy(deep=True)

    def list_instances(self, patient_id=None, statuses=None):
        wanted = set(statuses) if statuses is not None else None
        found = []
        for instance in self._instances.values():
            if patient_id is not None and instance.patient_id != patient_id:
                continue
            if wanted is not None and instance.status not in wanted:
                continue
            found.append(instance.model_copy(deep=True))
        return sorted(found, key=lambda i: (i.materialized_at, i.id))

    def save_instance(self, instance, expected_version, added=(), updated=(), deleted_ids=(), audit=None):
        current = self._instances.get(instance.id)
        if current is None:
            raise NotFoundError(f"Protocol instance {instance.id} not found")
        if current.version != expected_version:
            raise ConflictError(
                f"Protocol instance {instance.id} is at version {current.version}, not {expected_version}"
            )
        for occurrence in updated:
            existing = self._occurrences.get(occurrence.id)
            if existing is None or existing.instance_id != instance.id:
                raise NotFoundError(f"Occurrence {occurrence.id} not found on instance {instance.id}")
        for occurrence_id in deleted_ids:
            if occurrence_id not in self._occurrences:
                raise NotFoundError(f"Occurrence {occurrence_id} not found")

        # All preconditions hold; apply everything
        stored = instance.model_copy(deep=True)
        stored.version = expected_version + 1
        self._instances[stored.id] = stored
        for occurrence in updated:
            self._occurrences[occurrence.id] = occurrence.model_copy(deep=True)
        for occurrence_id in deleted_ids:
            del self._occurrences[occurrence_id]
        self._insert_occurrences(stored.id, added)
        self._audit(audit, stored.id)
        return stored.model_copy(deep=True)

    def _insert_occurrences(self, instance_id, occurrences):
        for occurrence in occurrences:
            stored = occurrence.model_copy(deep=True)
            stored.id = self._next_occurrence_id
            stored.instance_id = instance_id
            self._next_occurrence_id += 1
            self._occurrences[stored.id] = stored

    # --- Occurrences ---
    def list_occurrences(self, instance_id, include_cancelled=False):
        found = [
            o.model_copy(deep=True) for o in self._occurrences.values()
            if o.instance_id == instance_id and (include_cancelled or o.is_live)
        ]
        return sorted(found, key=lambda o: (o.due_date, o.id))

    def get_occurrence(self, occurrence_id):
        occurrence = self._occurrences.get(occurrence_id)
        if occurrence is None:
            raise NotFoundError(f"Occurrence {occurrence_id} not found")
        return occurrence.model_copy(deep=True)
