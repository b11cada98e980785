"""
Enigmo - Client session protocol.

One ``ClientSession`` per transport connection. It owns the session state
machine, gates every routing operation on authentication, and turns typed
requests into calls on the shared router and directory.

Requests are handled one at a time in arrival order. Each handler validates
its input completely before touching shared state, so a rejected request
never leaves a partial mutation behind.
"""

import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .constants import AUTH_PROOF_MAX_AGE
from .context import RelayContext
from .crypto import EncryptedEnvelope, build_auth_proof, verify_signature
from .errors import (
    GENERIC_REJECTION_CODE,
    INTERNAL_ERROR_CODE,
    AuthenticationFailed,
    CryptoError,
    EnigmoError,
    IdentityConflict,
    MalformedEnvelope,
    NotAuthenticated,
    RateLimited,
)
from .identity import Identity
from .protocol import (
    REQUEST_TYPES,
    AckRequest,
    AuthRequest,
    GetHistoryRequest,
    GetUsersRequest,
    LogoutRequest,
    MarkReadRequest,
    PingRequest,
    Request,
    SendMessageRequest,
    decode_line,
    error_response,
    make_response,
    parse_timestamp,
)
from .session_fsm import SessionEvent, SessionState, SessionStateMachine

logger = logging.getLogger(__name__)

Frame = Dict[str, Any]

# Requests accepted before authentication; logout only closes the session
UNGATED_REQUESTS = (AuthRequest, LogoutRequest)


class ClientSession:
    """Protocol state for one connection to the relay."""

    def __init__(self, context: RelayContext, connection_ref: int, peer_address: str = ""):
        self.context = context
        self.connection_ref = connection_ref
        self.peer_address = peer_address
        self.fsm = SessionStateMachine()
        self.fsm.on_closed = self._on_closed

        self.user_id: Optional[str] = None
        self.identity: Optional[Identity] = None
        self.protocol_errors = 0
        self.max_protocol_errors = context.limit("max_protocol_errors")
        self.should_close = False

        self._handlers: Dict[type, Callable[[Any], List[Frame]]] = {
            AuthRequest: self._handle_auth,
            SendMessageRequest: self._handle_send_message,
            GetHistoryRequest: self._handle_get_history,
            MarkReadRequest: self._handle_mark_read,
            AckRequest: self._handle_ack,
            GetUsersRequest: self._handle_get_users,
            PingRequest: self._handle_ping,
            LogoutRequest: self._handle_logout,
        }
        missing = set(REQUEST_TYPES.values()) - set(self._handlers)
        if missing:
            raise TypeError(f"No session handler for: {sorted(cls.TYPE for cls in missing)}")

    @property
    def rate_key(self) -> str:
        return f"slot:{self.connection_ref}"

    @property
    def state(self) -> SessionState:
        return self.fsm.get_state()

    def handle_line(self, line: bytes) -> List[Frame]:
        """Decode one raw frame and handle it."""
        try:
            request = decode_line(line, self.context.limit("max_line_bytes"))
        except EnigmoError as e:
            return self._reject(e)
        return self.handle(request)

    def handle(self, request: Request) -> List[Frame]:
        """
        Handle one typed request.

        Returns:
            Frames to send back on this connection, in order
        """
        if self.fsm.is_closed():
            return [error_response(NotAuthenticated(request.TYPE).wire_code, "Session closed")]

        try:
            if not isinstance(request, UNGATED_REQUESTS) and not self.fsm.is_active():
                raise NotAuthenticated(request.TYPE)
            if self.user_id is not None:
                self.context.directory.touch(self.user_id)
            return self._handlers[type(request)](request)
        except EnigmoError as e:
            return self._reject(e)
        except Exception as e:
            logger.error(f"Unhandled error in session {self.connection_ref}: {e}", exc_info=True)
            return self._strike([error_response(INTERNAL_ERROR_CODE, "Internal error")])

    def _reject(self, error: EnigmoError) -> List[Frame]:
        if isinstance(error, CryptoError) and error.wire_code == GENERIC_REJECTION_CODE:
            # One message for every crypto failure; details stay in the log.
            logger.info(f"Rejected request on slot {self.connection_ref}: {error}")
            return self._strike([error_response(GENERIC_REJECTION_CODE, "Request rejected")])

        logger.info(f"Request error on slot {self.connection_ref}: {error}")
        return self._strike([error_response(error.wire_code, error.message)])

    def _strike(self, frames: List[Frame]) -> List[Frame]:
        self.protocol_errors += 1
        if self.protocol_errors >= self.max_protocol_errors:
            logger.warning(
                f"Closing slot {self.connection_ref} after {self.protocol_errors} protocol errors"
            )
            self.should_close = True
        return frames

    # Handlers

    def _handle_auth(self, request: AuthRequest) -> List[Frame]:
        if not self.context.verifier.verify(request.credential):
            raise AuthenticationFailed()

        identity = Identity.from_wire(
            {
                "signingPublicKey": request.signing_public_key,
                "agreementPublicKey": request.agreement_public_key,
            }
        )
        self._verify_possession(identity, request)
        directory = self.context.directory

        if self.fsm.is_active():
            if identity.id != self.user_id or not identity.same_keys(self.identity):
                raise IdentityConflict(identity.id)
            record = directory.register(identity, request.nickname)
            self.fsm.transition(SessionEvent.REAUTHENTICATED)
            logger.debug(f"Re-authenticated {self.user_id} on slot {self.connection_ref}")
        else:
            record = directory.register(identity, request.nickname)
            self.fsm.transition(SessionEvent.AUTH_ACCEPTED)
            self.identity = record.identity
            self.user_id = record.id
            directory.mark_online(record.id, self.connection_ref)
            self.fsm.transition(SessionEvent.ACTIVATED)
            logger.info(f"Authenticated {self.user_id} on slot {self.connection_ref} {self.peer_address}".rstrip())

        return [
            make_response(
                "auth_success",
                userId=record.id,
                nickname=record.nickname,
                fingerprint=record.identity.fingerprint,
                success=True,
            )
        ]

    def _verify_possession(self, identity: Identity, request: AuthRequest) -> None:
        """
        Check the auth signature over the timestamp and agreement key.

        Public keys are handed out by ``get_users``, so presenting them proves
        nothing. The signature must verify under the presented signing key and
        the timestamp must lie within ``AUTH_PROOF_MAX_AGE`` of relay time.

        Raises:
            AuthenticationFailed: On a stale, unparseable or unverifiable proof
        """
        try:
            issued_at = parse_timestamp(request.timestamp)
        except MalformedEnvelope as e:
            raise AuthenticationFailed("Invalid auth timestamp") from e

        skew = abs((datetime.now(timezone.utc) - issued_at).total_seconds())
        if skew > AUTH_PROOF_MAX_AGE:
            logger.warning(f"Stale auth proof for {identity.id} on slot {self.connection_ref} ({skew:.0f}s)")
            raise AuthenticationFailed("Auth timestamp outside the accepted window")

        try:
            signature = base64.b64decode(request.signature, validate=True)
        except (binascii.Error, ValueError) as e:
            raise AuthenticationFailed("Auth signature is not valid base64") from e

        proof = build_auth_proof(request.timestamp, identity.agreement_public_key)
        try:
            verify_signature(identity.signing_public_key, proof, signature)
        except CryptoError as e:
            logger.warning(f"Auth signature rejected for {identity.id} on slot {self.connection_ref}")
            raise AuthenticationFailed("Auth signature does not verify") from e

    def _handle_send_message(self, request: SendMessageRequest) -> List[Frame]:
        if not self.context.rate_limiter.check_message_rate(self.rate_key):
            raise RateLimited()

        envelope = EncryptedEnvelope.from_wire(request.envelope, self.user_id, request.receiver_id)
        message = self.context.router.send(
            self.user_id,
            request.receiver_id,
            envelope,
            message_type=request.message_type,
            metadata=request.metadata,
            sent_at=request.timestamp,
        )
        return [
            make_response(
                "ack",
                action=SendMessageRequest.TYPE,
                messageId=message.id,
                status=message.status.value,
                success=True,
            )
        ]

    def _handle_get_history(self, request: GetHistoryRequest) -> List[Frame]:
        limit = request.limit or self.context.limit("default_history_limit")
        limit = min(limit, self.context.limit("max_history_limit"))
        history = self.context.router.get_history(
            self.user_id, request.other_user_id, limit=limit, before=request.before
        )
        return [
            make_response(
                "message_history",
                otherUserId=request.other_user_id,
                messages=[m.to_wire() for m in history],
            )
        ]

    def _status_ack(self, action: str, message_id: str, success: bool) -> List[Frame]:
        message = self.context.router.get_message(message_id) if success else None
        return [
            make_response(
                "ack",
                action=action,
                messageId=message_id,
                success=success,
                status=message.status.value if message else None,
            )
        ]

    def _handle_mark_read(self, request: MarkReadRequest) -> List[Frame]:
        success = self.context.router.mark_read(request.message_id, self.user_id)
        return self._status_ack(MarkReadRequest.TYPE, request.message_id, success)

    def _handle_ack(self, request: AckRequest) -> List[Frame]:
        success = self.context.router.acknowledge(request.message_id, self.user_id)
        return self._status_ack(AckRequest.TYPE, request.message_id, success)

    def _handle_get_users(self, request: GetUsersRequest) -> List[Frame]:
        users = self.context.directory.list_online(exclude=self.user_id)
        return [make_response("users", users=[u.to_dict() for u in users])]

    def _handle_ping(self, request: PingRequest) -> List[Frame]:
        return [make_response("pong", echo=request.timestamp)]

    def _handle_logout(self, request: LogoutRequest) -> List[Frame]:
        self.fsm.transition(SessionEvent.LOGOUT)
        self.should_close = True
        return []

    # Lifecycle

    def close(self) -> None:
        """Transport closed. Safe to call more than once."""
        if not self.fsm.is_closed():
            self.fsm.transition(SessionEvent.TRANSPORT_CLOSED)

    def _on_closed(self) -> None:
        if self.user_id is not None:
            self.context.directory.mark_offline(self.user_id, self.connection_ref)
        self.context.rate_limiter.forget(self.rate_key)
        logger.info(f"Session on slot {self.connection_ref} closed ({self.user_id or 'unauthenticated'})")

    def __repr__(self) -> str:
        return f"ClientSession(slot={self.connection_ref}, user={self.user_id!r}, state={self.state.name})"
