"""Image catalog: authorized reads, listings, and owner edits and deletes."""

from typing import List, Optional, Union

from ..core.exceptions import BlobNotFoundError, ForbiddenError, NotFoundError, ValidationError
from ..core.image_utils import derived_asset_paths
from ..core.models import (
    AssetVariant,
    Image,
    ImagePage,
    ImageQuery,
    ImageSortField,
    SortOrder,
    Visibility,
)
from ..core.observability import LogContext, StructuredLogger
from ..core.protocols import BlobStoreProtocol, ImageRepository, LoggerProtocol
from .sharing import ShareWorkflowEngine


class ImageCatalog:
    """Every read goes through ShareWorkflowEngine.can_view_image."""

    def __init__(
        self,
        images: ImageRepository,
        blob_store: BlobStoreProtocol,
        sharing: ShareWorkflowEngine,
        logger: Optional[LoggerProtocol] = None,
        derived_prefix: str = "derived",
    ):
        self._images = images
        self._derived_prefix = derived_prefix
        self._blob_store = blob_store
        self._sharing = sharing
        self._logger = logger or StructuredLogger("catalog")

    def get_image(self, viewer_id: str, image_id: str) -> Image:
        image = self._images.get(image_id)
        if image is None or not self._sharing.can_view_image(viewer_id, image):
            raise NotFoundError(f"Image {image_id} not found")
        return image

    def list_owned(
        self,
        owner_id: str,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        sort_by: Optional[Union[ImageSortField, str]] = None,
        sort_order: Optional[Union[SortOrder, str]] = None,
        keyword: Optional[str] = None,
    ) -> ImagePage:
        """
        Page through the owner's images, newest first unless sorted otherwise.

        Raises:
            ValidationError: If a listing option is out of range
        """
        query = ImageQuery.build(
            page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order, keyword=keyword
        )
        items, total = self._images.search(query, owner_id=owner_id)
        return ImagePage(
            items=items, page=query.page, page_size=query.page_size, total_items=total
        )

    def delete_image(self, actor_id: str, image_id: str) -> None:
        """
        Delete an image and every blob stored for it. Owner only.

        Blobs go first, so a failed delete leaves the record in place to
        retry. Share requests for the image are kept as history.

        Raises:
            NotFoundError: The actor cannot see the image
            ForbiddenError: The actor can see the image but does not own it
            StorageError: A blob could not be removed
        """
        image = self.get_image(actor_id, image_id)
        if image.owner_id != actor_id:
            raise ForbiddenError("Only the owner can delete this image")

        context = LogContext(operation="delete_image", component="catalog", actor_id=actor_id)
        thumbnail_path, preview_path = derived_asset_paths(self._derived_prefix, image.id)
        paths = [image.original_path, thumbnail_path, preview_path]
        paths += [p for p in (image.thumbnail_path, image.preview_path) if p and p not in paths]
        for path in paths:
            self._blob_store.delete(path)

        self._images.delete(image.id)
        self._logger.info("Image deleted", context, image_id=image_id, blobs=len(paths))

    def update_metadata(
        self,
        actor_id: str,
        image_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        visibility: Optional[Union[Visibility, str]] = None,
    ) -> Image:
        """
        Edit the owner-controlled fields of an image. Last writer wins.

        Raises:
            NotFoundError: The actor cannot see the image
            ForbiddenError: The actor can see the image but does not own it
        """
        image = self.get_image(actor_id, image_id)
        if image.owner_id != actor_id:
            raise ForbiddenError("Only the owner can edit this image")

        if title is not None:
            image.title = title
        if description is not None:
            image.description = description
        if tags is not None:
            image.tags = [tag.strip() for tag in tags if tag.strip()]
        if visibility is not None:
            try:
                image.visibility = Visibility(visibility)
            except ValueError as e:
                raise ValidationError(f"Unknown visibility {visibility!r}") from e

        self._images.save_metadata(image)
        self._logger.info(
            "Image metadata updated",
            LogContext(operation="update_metadata", component="catalog", actor_id=actor_id),
            image_id=image_id,
        )
        return image

    def read_asset(
        self, viewer_id: str, image_id: str, variant: Union[AssetVariant, str]
    ) -> bytes:
        """
        Load the bytes of an original or derived asset.

        Authorization is checked on every call, whatever the variant.

        Raises:
            NotFoundError: No access, or the variant does not exist yet
        """
        try:
            variant = AssetVariant(variant)
        except ValueError as e:
            raise ValidationError(f"Unknown asset variant {variant!r}") from e
        image = self.get_image(viewer_id, image_id)
        path = {
            AssetVariant.ORIGINAL: image.original_path,
            AssetVariant.THUMBNAIL: image.thumbnail_path,
            AssetVariant.PREVIEW: image.preview_path,
        }[variant]
        if path is None:
            raise NotFoundError(f"Image {image_id} has no {variant.value} yet")
        try:
            return self._blob_store.get(path)
        except BlobNotFoundError as e:
            raise NotFoundError(f"Image {image_id} {variant.value} is missing") from e
