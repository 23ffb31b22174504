"""
Workflow assembly from settings.

    workflow = build_workflow(get_settings())
    ...
    await close_workflow(workflow)

Sandbox vs live clients are chosen by EFILING_VERIFY_PROVIDER_MODE and
EFILING_AUTHORITY_MODE; storage by APP_STORAGE_BACKEND.
"""

import logging
from typing import Optional

from config.settings import Settings, get_settings
from resilience import CircuitBreaker, CircuitBreakerConfig, RetryConfig

from .adapters import build_default_registry
from .authority import (
    FilingAuthority,
    GuardedAuthority,
    HttpFilingAuthority,
    SandboxFilingAuthority,
)
from .coordinator import VerificationCoordinator
from .declarations import DeclarationGate
from .locks import FilingLockManager
from .models import Clock, utcnow
from .providers import HttpIdentityProvider, IdentityProvider, SandboxIdentityProvider
from .repository import FilingRepository, InMemoryFilingRepository
from .status import StatusPoller
from .submission import SubmissionClient
from .workflow import FilingWorkflow

logger = logging.getLogger(__name__)


def build_identity_provider(settings: Settings) -> IdentityProvider:
    verification = settings.verification
    if verification.provider_mode == "live":
        return HttpIdentityProvider(
            verification.identity_base_url,
            timeout_seconds=verification.provider_timeout_seconds,
        )
    return SandboxIdentityProvider()


def build_authority(settings: Settings) -> FilingAuthority:
    """Authority client wrapped in timeout, circuit breaker and read retries."""
    authority = settings.authority
    resilience = settings.resilience
    if authority.mode == "live":
        inner: FilingAuthority = HttpFilingAuthority(
            authority.base_url,
            api_key=authority.api_key,
            timeout_seconds=authority.request_timeout_seconds,
        )
    else:
        inner = SandboxFilingAuthority()
    return GuardedAuthority(
        inner,
        breaker=CircuitBreaker("filing_authority", CircuitBreakerConfig.from_settings(resilience)),
        retry_config=RetryConfig.from_settings(resilience),
        timeout_seconds=authority.request_timeout_seconds,
    )


def build_repository(settings: Settings, clock: Clock = utcnow) -> FilingRepository:
    if settings.storage_backend == "database":
        from database import SqlFilingRepository, get_async_session_factory

        return SqlFilingRepository(get_async_session_factory(), clock=clock)
    return InMemoryFilingRepository(clock=clock)


def build_workflow(
    settings: Optional[Settings] = None,
    repository: Optional[FilingRepository] = None,
    provider: Optional[IdentityProvider] = None,
    authority: Optional[FilingAuthority] = None,
    clock: Clock = utcnow,
) -> FilingWorkflow:
    """
    Assemble a FilingWorkflow.

    Args:
        settings: Application settings (defaults to get_settings())
        repository: Storage override
        provider: Identity provider override
        authority: Filing authority override (used as given, not wrapped)
        clock: Time source shared by every component

    Returns:
        Ready-to-use FilingWorkflow
    """
    settings = settings or get_settings()
    repository = repository or build_repository(settings, clock)
    provider = provider or build_identity_provider(settings)
    authority = authority or build_authority(settings)

    gate = DeclarationGate(catalog_path=settings.declarations_path)
    registry = build_default_registry(provider, settings.verification, clock)
    coordinator = VerificationCoordinator(
        repository, gate, registry, settings=settings.verification, clock=clock
    )
    poller = StatusPoller(repository, authority, clock=clock)
    submission_client = SubmissionClient(
        repository, authority, poller, settings=settings.authority, clock=clock
    )

    logger.info(
        f"[WORKFLOW] Assembled | storage={type(repository).__name__} | "
        f"provider={type(provider).__name__} | authority={type(authority).__name__} | "
        f"methods={[m.value for m in registry.methods]}"
    )
    return FilingWorkflow(
        repository,
        gate,
        coordinator,
        submission_client,
        poller,
        locks=FilingLockManager(settings.lock_timeout_seconds),
        clock=clock,
    )


async def close_workflow(workflow: FilingWorkflow) -> None:
    """Close HTTP clients held by the workflow's provider and authority."""
    clients = []
    authority = workflow.submission_client.authority
    clients.append(authority)
    if isinstance(authority, GuardedAuthority):
        clients.append(authority.inner)
    for method in workflow.coordinator.registry.methods:
        clients.append(workflow.coordinator.adapter_for(method).provider)

    closed = set()
    for client in clients:
        if id(client) in closed or not hasattr(client, "aclose"):
            continue
        closed.add(id(client))
        await client.aclose()
