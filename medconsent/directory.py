"""
Patient and provider directories
Lookups the consent engine relies on; identity itself lives elsewhere
"""

from typing import Any, Dict, Iterable, Mapping, Protocol, Union

from .exceptions import PatientNotFoundError, ProviderNotFoundError


class PatientDirectory(Protocol):
    """Contract for patient lookups"""

    def get_patient_by_id(self, patient_id: str) -> Any:
        """Return the patient, or raise PatientNotFoundError"""
        ...


class ProviderDirectory(Protocol):
    """Contract for provider lookups"""

    def get_provider_by_id(self, provider_id: str) -> Any:
        """Return the provider, or raise ProviderNotFoundError"""
        ...


def _index(entries: Union[Iterable[str], Mapping[str, Any]]) -> Dict[str, Any]:
    if isinstance(entries, Mapping):
        return dict(entries)
    return {entry_id: {"id": entry_id} for entry_id in entries}


class InMemoryPatientDirectory:
    """In-memory patient directory for testing"""

    def __init__(self, patients: Union[Iterable[str], Mapping[str, Any]] = ()):
        self.patients = _index(patients)

    def add(self, patient_id: str, record: Any = None):
        self.patients[patient_id] = record if record is not None else {"id": patient_id}

    def get_patient_by_id(self, patient_id: str) -> Any:
        if patient_id not in self.patients:
            raise PatientNotFoundError(patient_id)
        return self.patients[patient_id]


class InMemoryProviderDirectory:
    """In-memory provider directory for testing"""

    def __init__(self, providers: Union[Iterable[str], Mapping[str, Any]] = ()):
        self.providers = _index(providers)

    def add(self, provider_id: str, record: Any = None):
        self.providers[provider_id] = record if record is not None else {"id": provider_id}

    def get_provider_by_id(self, provider_id: str) -> Any:
        if provider_id not in self.providers:
            raise ProviderNotFoundError(provider_id)
        return self.providers[provider_id]
