"""Version lineage: every re-upload of "the same" video joins a version group.

Versions form a singly linked chain through `replaces_video_id`; the group id
is the id of the first video in the chain and never changes once assigned.
"""

import logging
import uuid
from typing import List, Optional

from .errors import InvalidStateTransition, NotFound
from .queue.backends import VideoRecordStore
from .queue.models import ProcessingState, Video, WorkflowStatus

logger = logging.getLogger(__name__)


class VersionManager:
    """Creates video rows and maintains their version chains."""

    def __init__(self, store: VideoRecordStore):
        self.store = store

    def create_version(
        self,
        original_filename: str,
        source_location: str,
        tenant: str,
        uploaded_by: Optional[str] = None,
        replaces_video_id: Optional[str] = None,
        size: int = 0,
        video_id: Optional[str] = None,
    ) -> Video:
        """Create a new Queued video, optionally as the next version of another.

        Args:
            original_filename: Name shown to users
            source_location: Object key of the uploaded source, or file:// URI
            tenant: Bucket / workspace the video belongs to
            uploaded_by: Opaque actor id
            replaces_video_id: Video this one supersedes
            size: Source size in bytes
            video_id: Pre-allocated id (when the source was stored under it)

        Raises:
            NotFound: replaces_video_id does not exist
            InvalidStateTransition: replaced video is deleted, in another
                tenant, already superseded, or its chain is corrupt
        """
        if not original_filename:
            raise ValueError("original_filename is required")
        if not tenant:
            raise ValueError("tenant is required")

        new_id = video_id or uuid.uuid4().hex
        replaces: Optional[Video] = None
        group_id = new_id
        version_number = 1

        if replaces_video_id:
            replaces = self.store.get(replaces_video_id)
            if replaces is None:
                raise NotFound(f"Video to replace not found: {replaces_video_id}")
            if replaces.is_deleted:
                raise InvalidStateTransition(
                    f"Cannot add a version to deleted video {replaces_video_id}"
                )
            if replaces.bucket != tenant:
                raise InvalidStateTransition(
                    f"Video {replaces_video_id} belongs to another tenant"
                )
            if not replaces.is_active_version:
                raise InvalidStateTransition(
                    f"Video {replaces_video_id} is not the latest version of its group"
                )
            # Raises on a cycle before anything is written
            self.get_chain(replaces_video_id)
            group_id = replaces.version_group_id or replaces.id
            version_number = replaces.version_number + 1

        video = Video(
            id=new_id,
            bucket=tenant,
            filename=original_filename,
            object_key=source_location,
            size=size,
            status=WorkflowStatus.PENDING,
            processing_state=ProcessingState.QUEUED,
            version_group_id=group_id,
            replaces_video_id=replaces.id if replaces else None,
            version_number=version_number,
            is_active_version=True,
            uploaded_by=uploaded_by,
        )
        created = self.store.insert_version(video, replaces)
        if replaces is not None:
            logger.info("Video %s is version %d of group %s (replaces %s)",
                        created.id, version_number, group_id, replaces.id)
        else:
            logger.info("Video %s created in %s", created.id, tenant)
        return created

    def list_versions(self, version_group_id: str, tenant: Optional[str] = None) -> List[Video]:
        """Live versions of a group, oldest first.

        Raises:
            NotFound: no live video carries this group id (or none in `tenant`)
        """
        versions = self.store.list_group(version_group_id)
        if tenant is not None:
            versions = [v for v in versions if v.bucket == tenant]
        if not versions:
            raise NotFound(f"Version group not found: {version_group_id}")
        return versions

    def get_chain(self, video_id: str) -> List[Video]:
        """Walk replaces_video_id back to the first version; returns oldest first.

        Links to purged rows end the walk.
        """
        chain: List[Video] = []
        seen = set()
        current = self.store.require(video_id)
        while current is not None:
            if current.id in seen:
                raise InvalidStateTransition(f"Version chain of {video_id} contains a cycle")
            seen.add(current.id)
            chain.append(current)
            if not current.replaces_video_id:
                break
            current = self.store.get(current.replaces_video_id)
        chain.reverse()
        return chain
