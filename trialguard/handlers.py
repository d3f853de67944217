"""Identity-provider lifecycle hooks and the API-Gateway authorizer entry point.

Each handler follows the ``handler(event, context)`` convention: the event is
the provider's trigger payload and the return value is handed back to it.
Pre-signup and pre-authentication reject by raising; post-confirmation never
raises.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from trialguard.logging import bind_invocation, get_logger
from trialguard.service.account_status import resolve_account_type
from trialguard.service.errors import ServiceError
from trialguard.service.middleware import AuthRequest
from trialguard.service.pre_signup import apply_signup_side_effects
from trialguard.service.runtime import Runtime, get_runtime, run_sync

logger = get_logger(__name__)


def _bind(hook: str, context: Any) -> str:
    return bind_invocation(hook, getattr(context, "aws_request_id", None))


def _client_metadata(event: Dict[str, Any]) -> Dict[str, Any]:
    return (event.get("request") or {}).get("clientMetadata") or {}


def _user_attributes(event: Dict[str, Any]) -> Dict[str, Any]:
    return (event.get("request") or {}).get("userAttributes") or {}


def pre_signup_handler(
    event: Dict[str, Any], context: Any = None, *, runtime: Optional[Runtime] = None
) -> Dict[str, Any]:
    _bind("pre_signup", context)
    runtime = runtime or get_runtime()
    logger.info("pre_signup_invoked", trigger_source=event.get("triggerSource"))
    account_type = resolve_account_type(event.get("userPoolId"))
    try:
        run_sync(runtime.pre_signup.validate(account_type, _user_attributes(event)))
    except ServiceError as exc:
        logger.warning("pre_signup_rejected", error_kind=exc.kind.value)
        raise
    return apply_signup_side_effects(event, account_type)


def pre_authentication_handler(
    event: Dict[str, Any], context: Any = None, *, runtime: Optional[Runtime] = None
) -> Dict[str, Any]:
    _bind("pre_authentication", context)
    runtime = runtime or get_runtime()
    account_type = resolve_account_type(event.get("userPoolId"))
    metadata = _client_metadata(event)
    run_sync(
        runtime.pre_auth.validate(
            _user_attributes(event).get("email"),
            account_type,
            source_ip=metadata.get("sourceIp"),
            user_agent=metadata.get("userAgent"),
        )
    )
    return event


def post_confirmation_handler(
    event: Dict[str, Any], context: Any = None, *, runtime: Optional[Runtime] = None
) -> Dict[str, Any]:
    _bind("post_confirmation", context)
    try:
        runtime = runtime or get_runtime()
        account_type = resolve_account_type(event.get("userPoolId"))
    except Exception as exc:
        # Confirmation is never blocked, even by a misconfigured pool
        logger.error("post_confirmation_setup_failed", error=str(exc))
        return event
    run_sync(
        runtime.post_confirmation.provision(
            account_type,
            _user_attributes(event),
            source_ip=_client_metadata(event).get("sourceIp"),
        )
    )
    return event


def auth_middleware_handler(
    event: Dict[str, Any], context: Any = None, *, runtime: Optional[Runtime] = None
) -> Dict[str, Any]:
    _bind("authorizer", context)
    runtime = runtime or get_runtime()
    result = run_sync(runtime.middleware.authenticate(AuthRequest.from_event(event)))
    return result.to_lambda_response()
