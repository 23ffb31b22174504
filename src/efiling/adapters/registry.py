"""Adapter lookup by verification method."""

from typing import Dict, Iterable, List, Optional

from config.settings import VerificationSettings

from ..errors import ValidationError
from ..models import Clock, VerificationMethod, utcnow
from ..providers import IdentityProvider
from .bank_redirect import BankRedirectAdapter
from .base import VerificationProtocolAdapter
from .certificate import CertificateAdapter
from .otp import AadhaarOtpAdapter, BankEvcAdapter, DematEvcAdapter

DEFAULT_ADAPTERS = (
    AadhaarOtpAdapter,
    BankEvcAdapter,
    DematEvcAdapter,
    CertificateAdapter,
    BankRedirectAdapter,
)


class AdapterRegistry:
    """Maps each VerificationMethod to its adapter instance."""

    def __init__(self, adapters: Iterable[VerificationProtocolAdapter] = ()):
        self._adapters: Dict[VerificationMethod, VerificationProtocolAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: VerificationProtocolAdapter) -> None:
        self._adapters[adapter.method] = adapter

    def get(self, method: VerificationMethod) -> VerificationProtocolAdapter:
        try:
            return self._adapters[VerificationMethod(method)]
        except (KeyError, ValueError):
            raise ValidationError(
                f"Verification method {method} is not supported",
                code="UNSUPPORTED_METHOD",
                details={"method": str(method), "supported": [m.value for m in self.methods]},
            )

    @property
    def methods(self) -> List[VerificationMethod]:
        return list(self._adapters.keys())


def build_default_registry(
    provider: IdentityProvider,
    settings: Optional[VerificationSettings] = None,
    clock: Clock = utcnow,
) -> AdapterRegistry:
    settings = settings or VerificationSettings()
    return AdapterRegistry(cls(provider, settings, clock) for cls in DEFAULT_ADAPTERS)
