import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import redis
from redis.exceptions import WatchError

from reality_maker.config import Settings, get_settings
from reality_maker.errors import SceneConflictError
from reality_maker.models import (
    EditPlan,
    Export,
    NarrationClip,
    Narrative,
    Project,
    Scene,
    SceneTranscript,
    Video,
)

logger = logging.getLogger(__name__)


def connect_redis(settings: Optional[Settings] = None) -> "redis.Redis":
    settings = settings or get_settings()
    return redis.from_url(settings.redis_url, decode_responses=True)


class ProjectStore:
    """
    Durable project data as JSON documents in Redis.

    Key layout:
        project:{id}                 Project
        project:{id}:videos          list of video ids (upload order)
        project:{id}:scenes          set of scene ids
        project:{id}:exports         list of Export documents (append-only)
        project:{id}:edit_plan       EditPlan
        video:{id}                   Video
        video:{id}:scenes            set of scene ids
        scene:{id}                   Scene
        narrative:{project_id}       Narrative
    """

    def __init__(self, redis_client: Optional["redis.Redis"] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.redis = redis_client if redis_client is not None else connect_redis(self.settings)

    # --- keys -------------------------------------------------------------

    @staticmethod
    def _project_key(project_id: str) -> str:
        return f"project:{project_id}"

    @staticmethod
    def _video_key(video_id: str) -> str:
        return f"video:{video_id}"

    @staticmethod
    def _scene_key(scene_id: str) -> str:
        return f"scene:{scene_id}"

    @staticmethod
    def _narrative_key(project_id: str) -> str:
        return f"narrative:{project_id}"

    # --- atomic updates ---------------------------------------------------

    def _update_atomic(
        self,
        key: str,
        apply_fn: Callable[[Dict[str, Any]], bool],
        channel: Optional[str] = None,
        max_retries: int = 10,
    ) -> bool:
        """
        Read-modify-write a JSON document under WATCH/MULTI.

        apply_fn mutates the dict in place and returns whether it changed anything.
        Exceptions raised by apply_fn propagate unchanged.

        Returns:
            True if an update was written, False if the key is missing or apply_fn
            made no change.
        """
        for _ in range(max_retries):
            pipe = self.redis.pipeline()
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                if not raw:
                    pipe.unwatch()
                    return False

                data = json.loads(raw)
                if not apply_fn(data):
                    pipe.unwatch()
                    return False

                data["updated_at"] = datetime.utcnow().isoformat()

                pipe.multi()
                pipe.set(key, json.dumps(data))
                if channel:
                    pipe.publish(channel, json.dumps(data))
                pipe.execute()
                return True
            except WatchError:
                # Another writer updated the key; retry.
                continue
            finally:
                pipe.reset()

        logger.warning("Gave up updating %s after %d conflicting writes", key, max_retries)
        return False

    # --- projects ---------------------------------------------------------

    def create_project(self, project: Project) -> Project:
        self.redis.set(self._project_key(project.id), project.model_dump_json())
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        raw = self.redis.get(self._project_key(project_id))
        if not raw:
            return None
        return Project.model_validate_json(raw)

    def update_project(self, project_id: str, apply_fn: Callable[[Dict[str, Any]], bool]) -> bool:
        """Conditional project update; publishes on project_updates:{id} when applied."""
        return self._update_atomic(
            self._project_key(project_id),
            apply_fn,
            channel=f"project_updates:{project_id}",
        )

    def delete_project(self, project_id: str) -> bool:
        """Delete a project and everything it owns."""
        if not self.redis.exists(self._project_key(project_id)):
            return False

        video_ids = self.list_video_ids(project_id)
        scene_ids = self.redis.smembers(f"project:{project_id}:scenes")

        keys = [
            self._project_key(project_id),
            f"project:{project_id}:videos",
            f"project:{project_id}:scenes",
            f"project:{project_id}:exports",
            f"project:{project_id}:edit_plan",
            self._narrative_key(project_id),
        ]
        for video_id in video_ids:
            keys.append(self._video_key(video_id))
            keys.append(f"video:{video_id}:scenes")
        keys.extend(self._scene_key(scene_id) for scene_id in scene_ids)

        self.redis.delete(*keys)
        logger.info("Deleted project %s (%d videos, %d scenes)", project_id, len(video_ids), len(scene_ids))
        return True

    # --- videos -----------------------------------------------------------

    def add_video(self, video: Video) -> Video:
        pipe = self.redis.pipeline()
        pipe.set(self._video_key(video.id), video.model_dump_json())
        pipe.rpush(f"project:{video.project_id}:videos", video.id)
        pipe.execute()
        return video

    def get_video(self, video_id: str) -> Optional[Video]:
        raw = self.redis.get(self._video_key(video_id))
        if not raw:
            return None
        return Video.model_validate_json(raw)

    def list_video_ids(self, project_id: str) -> List[str]:
        return list(self.redis.lrange(f"project:{project_id}:videos", 0, -1))

    def list_videos(self, project_id: str) -> List[Video]:
        videos = []
        for video_id in self.list_video_ids(project_id):
            video = self.get_video(video_id)
            if video is not None:
                videos.append(video)
        return videos

    # --- scenes -----------------------------------------------------------

    def replace_video_scenes(self, project_id: str, video_id: str, scenes: Sequence[Scene]) -> List[Scene]:
        """
        Store the scenes detected for one video, replacing any stored by an
        earlier attempt so a retried analysis never duplicates scenes.
        """
        video_scenes_key = f"video:{video_id}:scenes"
        old_ids = self.redis.smembers(video_scenes_key)

        pipe = self.redis.pipeline()
        if old_ids:
            pipe.delete(*[self._scene_key(sid) for sid in old_ids])
            pipe.srem(f"project:{project_id}:scenes", *old_ids)
            pipe.delete(video_scenes_key)
        for scene in scenes:
            pipe.set(self._scene_key(scene.id), scene.model_dump_json())
            pipe.sadd(video_scenes_key, scene.id)
            pipe.sadd(f"project:{project_id}:scenes", scene.id)
        pipe.execute()

        if old_ids:
            logger.info("Replaced %d stale scenes for video %s", len(old_ids), video_id)
        return list(scenes)

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        raw = self.redis.get(self._scene_key(scene_id))
        if not raw:
            return None
        return Scene.model_validate_json(raw)

    def get_scenes(self, scene_ids: Sequence[str]) -> List[Scene]:
        """Load scenes by id, ordered by (video upload order, start_time). Unknown ids are skipped."""
        scenes = [s for s in (self.get_scene(sid) for sid in scene_ids) if s is not None]
        if not scenes:
            return []
        order = {vid: i for i, vid in enumerate(self.list_video_ids(scenes[0].project_id))}
        scenes.sort(key=lambda s: (order.get(s.video_id, len(order)), s.start_time, s.id))
        return scenes

    def list_scenes(self, project_id: str) -> List[Scene]:
        return self.get_scenes(sorted(self.redis.smembers(f"project:{project_id}:scenes")))

    def attach_transcript(self, transcript: SceneTranscript) -> bool:
        """
        Attach associated transcript data to a scene.

        Write-once: attaching identical data again is a no-op (returns False);
        attaching different data to a scene that already has some raises
        SceneConflictError.
        """
        incoming = {
            "transcription": transcript.transcription,
            "speakers": transcript.speakers,
            "emotions": transcript.emotions,
            "metadata": transcript.metadata,
        }

        def apply(data: Dict[str, Any]) -> bool:
            if data.get("transcription") is None:
                data.update(incoming)
                return True
            current = {k: data.get(k) for k in incoming}
            if current == incoming:
                return False
            raise SceneConflictError(f"Scene {transcript.scene_id} already has different transcript data")

        return self._update_atomic(self._scene_key(transcript.scene_id), apply)

    # --- narrative --------------------------------------------------------

    def upsert_narrative(self, project_id: str, structure: Dict[str, Any]) -> Narrative:
        existing = self.get_narrative(project_id)
        now = datetime.utcnow()
        if existing is None:
            narrative = Narrative(project_id=project_id, structure=structure, created_at=now, updated_at=now)
        else:
            narrative = existing.model_copy(update={"structure": structure, "updated_at": now})
        self.redis.set(self._narrative_key(project_id), narrative.model_dump_json())
        return narrative

    def get_narrative(self, project_id: str) -> Optional[Narrative]:
        raw = self.redis.get(self._narrative_key(project_id))
        if not raw:
            return None
        return Narrative.model_validate_json(raw)

    def set_narrations(self, project_id: str, narrations: Sequence[NarrationClip]) -> bool:
        payload = [n.model_dump(mode="json") for n in narrations]

        def apply(data: Dict[str, Any]) -> bool:
            if data.get("narrations") == payload:
                return False
            data["narrations"] = payload
            return True

        return self._update_atomic(self._narrative_key(project_id), apply)

    # --- edit plan & exports ---------------------------------------------

    def save_edit_plan(self, plan: EditPlan) -> EditPlan:
        self.redis.set(f"project:{plan.project_id}:edit_plan", plan.model_dump_json())
        return plan

    def get_edit_plan(self, project_id: str) -> Optional[EditPlan]:
        raw = self.redis.get(f"project:{project_id}:edit_plan")
        if not raw:
            return None
        return EditPlan.model_validate_json(raw)

    def add_export(self, export: Export) -> Export:
        self.redis.rpush(f"project:{export.project_id}:exports", export.model_dump_json())
        return export

    def list_exports(self, project_id: str) -> List[Export]:
        return [Export.model_validate_json(raw) for raw in self.redis.lrange(f"project:{project_id}:exports", 0, -1)]
