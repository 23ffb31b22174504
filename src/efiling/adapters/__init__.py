"""E-verification protocol adapters, one per VerificationMethod."""

from .bank_redirect import BankRedirectAdapter
from .base import VerificationProtocolAdapter
from .certificate import CertificateAdapter
from .otp import AadhaarOtpAdapter, BankEvcAdapter, DematEvcAdapter, OtpAdapter
from .registry import AdapterRegistry, build_default_registry

__all__ = [
    "AadhaarOtpAdapter",
    "AdapterRegistry",
    "BankEvcAdapter",
    "BankRedirectAdapter",
    "CertificateAdapter",
    "DematEvcAdapter",
    "OtpAdapter",
    "VerificationProtocolAdapter",
    "build_default_registry",
]
