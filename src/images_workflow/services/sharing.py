"""Share workflow engine: the cross-user access state machine."""

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from ..bus.base import MessageBus
from ..core.config import EngineConfig
from ..core.events import (
    SHARE_APPROVED,
    SHARE_REJECTED,
    SHARE_REQUESTED,
    BaseEvent,
    ShareApproved,
    ShareRejected,
    ShareRequested,
)
from ..core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    SelfShareError,
    TransientError,
    ValidationError,
)
from ..core.models import (
    Decision,
    Image,
    ImagePage,
    ImageQuery,
    ImageSortField,
    ShareRequest,
    ShareStatus,
    SortOrder,
    utc_now,
)
from ..core.observability import LogContext, StructuredLogger
from ..core.protocols import (
    AudiencePolicy,
    ImageRepository,
    LoggerProtocol,
    ShareRequestRepository,
)


class OpenAudience:
    """Every user may ask any owner for access."""

    def allows(self, owner_id: str, requester_id: str) -> bool:
        return True


class ShareWorkflowEngine:
    """
    Owns ShareRequest status. Runs synchronously in the caller's thread.

    Pending requests past their expiry are expired lazily whenever they are
    touched, and in bulk by ``expire_stale``.
    """

    def __init__(
        self,
        config: EngineConfig,
        images: ImageRepository,
        requests: ShareRequestRepository,
        bus: MessageBus,
        audience: Optional[AudiencePolicy] = None,
        logger: Optional[LoggerProtocol] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._images = images
        self._requests = requests
        self._bus = bus
        self._audience = audience or OpenAudience()
        self._logger = logger or StructuredLogger("sharing")
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self._config.share_ttl_days)

    def request_share(
        self, requester_id: str, image_id: str, message: Optional[str] = None
    ) -> ShareRequest:
        """
        Ask the owner of an image for access to it.

        Raises:
            NotFoundError: Unknown image, or private and requester outside the owner's audience
            SelfShareError: The requester owns the image
            ConflictError: A Pending request already exists for this pair
        """
        context = LogContext(
            operation="request_share", component="sharing", actor_id=requester_id
        ).with_metadata(image_id=image_id)

        image = self._images.get(image_id)
        if image is None:
            raise NotFoundError(f"Image {image_id} not found")
        if image.owner_id == requester_id:
            raise SelfShareError("You cannot request access to your own image")
        if not image.is_public and not self._audience.allows(image.owner_id, requester_id):
            raise NotFoundError(f"Image {image_id} not found")

        now = self._clock()
        existing = self._requests.find_pending(image_id, requester_id)
        if existing is not None and existing.is_past_expiry(now):
            self._expire(existing, now, context)

        request = ShareRequest(
            image_id=image_id,
            requester_id=requester_id,
            owner_id=image.owner_id,
            message=message,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self._requests.add(request)
        self._logger.info("Share request created", context, share_request_id=request.id)

        self._publish(
            SHARE_REQUESTED,
            ShareRequested(
                share_request_id=request.id,
                image_id=request.image_id,
                requester_id=request.requester_id,
                owner_id=request.owner_id,
                message=request.message,
            ),
            context,
        )
        return request

    def decide(
        self,
        actor_id: str,
        share_request_id: str,
        decision: Union[Decision, str],
        response_message: Optional[str] = None,
    ) -> ShareRequest:
        """
        Approve or reject a Pending request. Only its owner may decide.

        Raises:
            NotFoundError: Unknown request
            ForbiddenError: actor_id is not the request's owner
            InvalidStateError: The request is no longer Pending (or just expired)
        """
        try:
            decision = Decision(decision)
        except ValueError as e:
            raise ValidationError(f"Unknown decision {decision!r}") from e

        context = LogContext(
            operation="decide", component="sharing", actor_id=actor_id
        ).with_metadata(share_request_id=share_request_id, decision=decision.value)

        request = self._load(share_request_id)
        if actor_id != request.owner_id:
            raise ForbiddenError("Only the image owner can decide on this request")

        target = ShareStatus.APPROVED if decision == Decision.APPROVE else ShareStatus.REJECTED
        self._transition(request, target, context, response_message)

        event_type = ShareApproved if target == ShareStatus.APPROVED else ShareRejected
        topic = SHARE_APPROVED if target == ShareStatus.APPROVED else SHARE_REJECTED
        self._publish(
            topic,
            event_type(
                share_request_id=request.id,
                image_id=request.image_id,
                requester_id=request.requester_id,
                owner_id=request.owner_id,
            ),
            context,
        )
        return request

    def cancel(self, actor_id: str, share_request_id: str) -> ShareRequest:
        """
        Withdraw a Pending request. Only its requester may cancel.

        Raises:
            NotFoundError: Unknown request
            ForbiddenError: actor_id is not the requester
            InvalidStateError: The request is no longer Pending
        """
        context = LogContext(
            operation="cancel", component="sharing", actor_id=actor_id
        ).with_metadata(share_request_id=share_request_id)

        request = self._load(share_request_id)
        if actor_id != request.requester_id:
            raise ForbiddenError("Only the requester can cancel this request")
        self._transition(request, ShareStatus.CANCELLED, context)
        return request

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """
        Expire every Pending request created more than the TTL ago.

        Returns:
            Number of requests this sweep expired
        """
        now = now or self._clock()
        context = LogContext(operation="expire_stale", component="sharing")
        expired = 0
        for request in self._requests.list_pending_created_before(now - self.ttl):
            if self._expire(request, now, context):
                expired += 1
        self._logger.info("Expiry sweep finished", context, expired=expired)
        return expired

    def can_view(self, viewer_id: str, image_id: str) -> bool:
        """True iff the viewer owns the image, it is public, or access was approved."""
        image = self._images.get(image_id)
        if image is None:
            return False
        return self.can_view_image(viewer_id, image)

    def can_view_image(self, viewer_id: str, image: Image) -> bool:
        if image.owner_id == viewer_id or image.is_public:
            return True
        return self._requests.has_approved(image.id, viewer_id)

    def get_request(self, actor_id: str, share_request_id: str) -> ShareRequest:
        request = self._load(share_request_id)
        if actor_id not in (request.requester_id, request.owner_id):
            raise NotFoundError(f"Share request {share_request_id} not found")
        return request

    def list_incoming(
        self, owner_id: str, status: Optional[ShareStatus] = None
    ) -> List[ShareRequest]:
        return self._requests.list_for_owner(owner_id, status)

    def list_outgoing(
        self, requester_id: str, status: Optional[ShareStatus] = None
    ) -> List[ShareRequest]:
        return self._requests.list_for_requester(requester_id, status)

    def list_shared_with(
        self,
        viewer_id: str,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        sort_by: Optional[Union[ImageSortField, str]] = None,
        sort_order: Optional[Union[SortOrder, str]] = None,
        keyword: Optional[str] = None,
    ) -> ImagePage:
        """
        Page through images other users have approved for this viewer.

        Raises:
            ValidationError: If a listing option is out of range
        """
        query = ImageQuery.build(
            page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order, keyword=keyword
        )
        items, total = self._images.search(
            query, image_ids=self._requests.approved_image_ids(viewer_id)
        )
        return ImagePage(
            items=items, page=query.page, page_size=query.page_size, total_items=total
        )

    def _load(self, share_request_id: str) -> ShareRequest:
        request = self._requests.get(share_request_id)
        if request is None:
            raise NotFoundError(f"Share request {share_request_id} not found")
        return request

    def _transition(
        self,
        request: ShareRequest,
        target: ShareStatus,
        context: LogContext,
        response_message: Optional[str] = None,
    ) -> None:
        now = self._clock()
        if request.is_pending and request.is_past_expiry(now):
            self._expire(request, now, context)
            raise InvalidStateError(f"Share request {request.id} has expired")

        request.transition(target, now, response_message)
        if not self._requests.save_transition(request):
            raise InvalidStateError(f"Share request {request.id} was already resolved")
        self._logger.info(f"Share request {target.value.lower()}", context)

    def _expire(self, request: ShareRequest, now: datetime, context: LogContext) -> bool:
        request.transition(ShareStatus.EXPIRED, now)
        saved = self._requests.save_transition(request)
        if saved:
            self._logger.info("Share request expired", context, share_request_id=request.id)
        return saved

    def _publish(self, topic: str, event: BaseEvent, context: LogContext) -> None:
        try:
            self._bus.publish(topic, event)
        except TransientError as e:
            self._logger.warning(
                f"{topic} not published; the transition is already recorded",
                context,
                error=str(e),
            )
