"""
项目存储
Project / Chapter / ChapterVersion / Checkpoint / GenerationSession / PendingApproval / Rejection
的唯一真值来源

- ProjectStore: 与具体实现解耦的抽象接口
- SQLiteProjectStore: SQLite 实现，记录以 JSON 文档形式保存

status 单独成列，用于 compare-and-set 实现单写者租约
"""
import sqlite3
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Union
from contextlib import contextmanager

from bookgen.errors import ApprovalPendingError, PendingApprovalNotFoundError, ProjectNotFoundError
from bookgen.models import (
    Chapter, ChapterStatus, ChapterVersion, Checkpoint, GenerationSession,
    PendingApproval, Project, ProjectState, ProjectStatus, Rejection,
)


logger = logging.getLogger(__name__)


class ProjectStore(ABC):
    """项目存储抽象接口"""

    @abstractmethod
    def initialize(self) -> None:
        """初始化连接和表结构"""

    # ---- project ----

    @abstractmethod
    def create_project(self, project: Project) -> Project:
        """创建项目"""

    @abstractmethod
    def get_project(self, project_id: str) -> Project:
        """获取项目，不存在时抛出 ProjectNotFoundError"""

    @abstractmethod
    def list_projects(self) -> List[Project]:
        """列出全部项目"""

    @abstractmethod
    def save_project(self, project: Project) -> Project:
        """保存项目文档（不修改 status 列）"""

    @abstractmethod
    def transition_status(
        self,
        project_id: str,
        allowed_from: Iterable[ProjectStatus],
        to: ProjectStatus,
    ) -> bool:
        """原子地把 status 从 allowed_from 之一切换到 to，成功返回 True"""

    @abstractmethod
    def set_status(self, project_id: str, status: ProjectStatus) -> None:
        """无条件设置 status（仅限持有租约的一方调用）"""

    # ---- chapters ----

    @abstractmethod
    def list_chapters(self, project_id: str) -> List[Chapter]:
        """按章节编号排序列出章节"""

    @abstractmethod
    def get_chapter(self, project_id: str, chapter_number: int) -> Optional[Chapter]:
        """获取章节"""

    @abstractmethod
    def save_chapter_version(
        self,
        project_id: str,
        chapter_number: int,
        title: str,
        content: str,
        word_count: int,
        changed_by: str = "ai",
        change_description: str = "",
        status: ChapterStatus = ChapterStatus.APPROVED,
    ) -> Chapter:
        """写入章节的新版本；同一编号只会修订，不会重复创建"""

    @abstractmethod
    def list_chapter_versions(self, project_id: str, chapter_number: int) -> List[ChapterVersion]:
        """列出章节全部版本"""

    # ---- checkpoints / sessions ----

    @abstractmethod
    def append_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        """追加检查点"""

    @abstractmethod
    def list_checkpoints(self, project_id: str) -> List[Checkpoint]:
        """按时间顺序列出检查点"""

    @abstractmethod
    def get_session(self, project_id: str) -> GenerationSession:
        """获取生成会话，不存在则创建"""

    @abstractmethod
    def save_session(self, session: GenerationSession) -> GenerationSession:
        """保存生成会话"""

    # ---- approvals ----

    @abstractmethod
    def create_pending(self, pending: PendingApproval) -> PendingApproval:
        """创建待审批记录；已有未处理记录时抛出 ApprovalPendingError"""

    @abstractmethod
    def get_open_pending(self, project_id: str) -> Optional[PendingApproval]:
        """获取项目未处理的审批"""

    @abstractmethod
    def get_pending(self, pending_id: str) -> PendingApproval:
        """获取未处理的审批，不存在或已处理时抛出 PendingApprovalNotFoundError"""

    @abstractmethod
    def claim_pending(self, pending_id: str) -> PendingApproval:
        """原子地把未处理的审批标记为 approving；已被处理或正在审批时抛出 PendingApprovalNotFoundError"""

    @abstractmethod
    def reopen_pending(self, pending_id: str) -> bool:
        """approving -> open（提交未完成时归还审批）"""

    @abstractmethod
    def resolve_pending(self, pending_id: str, resolution: str, from_state: str = "open") -> None:
        """关闭审批（approved / rejected / invalid）"""

    @abstractmethod
    def add_rejection(self, rejection: Rejection) -> None:
        """记录一次拒绝"""

    @abstractmethod
    def get_last_rejection(self, project_id: str) -> Optional[Rejection]:
        """最近一次尚未被后续回合消化的拒绝"""

    @abstractmethod
    def acknowledge_rejections(self, project_id: str) -> None:
        """标记拒绝已被后续回合处理"""

    @abstractmethod
    def close(self) -> None:
        """关闭连接"""

    def load_state(self, project_id: str) -> ProjectState:
        """读取阶段推导所需的完整快照"""
        return ProjectState(
            project=self.get_project(project_id),
            chapters=self.list_chapters(project_id),
            last_rejection=self.get_last_rejection(project_id),
        )


class SQLiteProjectStore(ProjectStore):
    """SQLite 实现

    单连接 + 可重入锁；同一项目的读写在锁内串行，保证写后读一致
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        self.connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @contextmanager
    def get_connection(self):
        """获取数据库连接的上下文管理器（事务）"""
        with self._lock:
            try:
                if self.connection is None:
                    self.connection = sqlite3.connect(self.db_path, check_same_thread=False)
                    self.connection.row_factory = sqlite3.Row
                yield self.connection
                self.connection.commit()
            except sqlite3.Error as e:
                logger.error(f"数据库操作失败: {e}")
                if self.connection is not None:
                    self.connection.rollback()
                raise

    def initialize(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        with self.get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chapters (
                    project_id TEXT NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (project_id, chapter_number)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chapter_versions (
                    project_id TEXT NOT NULL,
                    chapter_number INTEGER NOT NULL,
                    version_number INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (project_id, chapter_number, version_number)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    project_id TEXT PRIMARY KEY,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pending_approvals (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            # 每个项目最多一条未处理（含审批中）的审批
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_pending_active
                ON pending_approvals(project_id) WHERE state IN ('open', 'approving')
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS rejections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT NOT NULL,
                    acknowledged INTEGER NOT NULL DEFAULT 0,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_checkpoint_project ON checkpoints(project_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_rejection_project ON rejections(project_id)")

        logger.info(f"✅ 项目存储初始化成功: {self.db_path}")

    # ---- project ----

    def create_project(self, project: Project) -> Project:
        with self.get_connection() as conn:
            conn.execute(
                "INSERT INTO projects (id, status, data, updated_at) VALUES (?, ?, ?, ?)",
                (project.id, project.status.value, project.model_dump_json(), project.updated_at.isoformat()),
            )
        return project

    def _row_to_project(self, row: sqlite3.Row) -> Project:
        project = Project.model_validate_json(row["data"])
        project.status = ProjectStatus(row["status"])
        project.updated_at = datetime.fromisoformat(row["updated_at"])
        return project

    def get_project(self, project_id: str) -> Project:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        if row is None:
            raise ProjectNotFoundError(project_id)
        return self._row_to_project(row)

    def list_projects(self) -> List[Project]:
        with self.get_connection() as conn:
            rows = conn.execute("SELECT * FROM projects ORDER BY updated_at DESC").fetchall()
        return [self._row_to_project(row) for row in rows]

    def save_project(self, project: Project) -> Project:
        project.updated_at = datetime.now()
        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE projects SET data = ?, updated_at = ? WHERE id = ?",
                (project.model_dump_json(), project.updated_at.isoformat(), project.id),
            )
            if cursor.rowcount == 0:
                raise ProjectNotFoundError(project.id)
        return project

    def transition_status(
        self,
        project_id: str,
        allowed_from: Iterable[ProjectStatus],
        to: ProjectStatus,
    ) -> bool:
        allowed = [s.value for s in allowed_from]
        if not allowed:
            return False
        placeholders = ", ".join("?" for _ in allowed)
        with self.get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE projects SET status = ?, updated_at = ? WHERE id = ? AND status IN ({placeholders})",
                (to.value, datetime.now().isoformat(), project_id, *allowed),
            )
            return cursor.rowcount == 1

    def set_status(self, project_id: str, status: ProjectStatus) -> None:
        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE projects SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, datetime.now().isoformat(), project_id),
            )
            if cursor.rowcount == 0:
                raise ProjectNotFoundError(project_id)

    # ---- chapters ----

    def list_chapters(self, project_id: str) -> List[Chapter]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT data FROM chapters WHERE project_id = ? ORDER BY chapter_number",
                (project_id,),
            ).fetchall()
        return [Chapter.model_validate_json(row["data"]) for row in rows]

    def get_chapter(self, project_id: str, chapter_number: int) -> Optional[Chapter]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT data FROM chapters WHERE project_id = ? AND chapter_number = ?",
                (project_id, chapter_number),
            ).fetchone()
        return Chapter.model_validate_json(row["data"]) if row else None

    def save_chapter_version(
        self,
        project_id: str,
        chapter_number: int,
        title: str,
        content: str,
        word_count: int,
        changed_by: str = "ai",
        change_description: str = "",
        status: ChapterStatus = ChapterStatus.APPROVED,
    ) -> Chapter:
        now = datetime.now()
        with self.get_connection() as conn:
            existing = self.get_chapter(project_id, chapter_number)
            if existing is None:
                chapter = Chapter(
                    project_id=project_id,
                    chapter_number=chapter_number,
                    title=title,
                    content=content,
                    word_count=word_count,
                    status=status,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
            else:
                chapter = existing.model_copy(update={
                    "title": title or existing.title,
                    "content": content,
                    "word_count": word_count,
                    "status": status,
                    "version": existing.version + 1,
                    "updated_at": now,
                })

            version = ChapterVersion(
                project_id=project_id,
                chapter_number=chapter_number,
                version_number=chapter.version,
                content=content,
                word_count=word_count,
                changed_by=changed_by,
                change_description=change_description,
                created_at=now,
            )
            conn.execute(
                "INSERT OR REPLACE INTO chapters (project_id, chapter_number, data) VALUES (?, ?, ?)",
                (project_id, chapter_number, chapter.model_dump_json()),
            )
            conn.execute(
                "INSERT INTO chapter_versions (project_id, chapter_number, version_number, data) VALUES (?, ?, ?, ?)",
                (project_id, chapter_number, version.version_number, version.model_dump_json()),
            )
        return chapter

    def list_chapter_versions(self, project_id: str, chapter_number: int) -> List[ChapterVersion]:
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT data FROM chapter_versions
                WHERE project_id = ? AND chapter_number = ?
                ORDER BY version_number
                """,
                (project_id, chapter_number),
            ).fetchall()
        return [ChapterVersion.model_validate_json(row["data"]) for row in rows]

    # ---- checkpoints / sessions ----

    def append_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        with self.get_connection() as conn:
            conn.execute(
                "INSERT INTO checkpoints (project_id, data) VALUES (?, ?)",
                (checkpoint.project_id, checkpoint.model_dump_json()),
            )
        return checkpoint

    def list_checkpoints(self, project_id: str) -> List[Checkpoint]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT data FROM checkpoints WHERE project_id = ? ORDER BY id",
                (project_id,),
            ).fetchall()
        return [Checkpoint.model_validate_json(row["data"]) for row in rows]

    def get_session(self, project_id: str) -> GenerationSession:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT data FROM sessions WHERE project_id = ?", (project_id,)
            ).fetchone()
            if row is not None:
                return GenerationSession.model_validate_json(row["data"])
            session = GenerationSession(project_id=project_id)
            conn.execute(
                "INSERT INTO sessions (project_id, data) VALUES (?, ?)",
                (project_id, session.model_dump_json()),
            )
        return session

    def save_session(self, session: GenerationSession) -> GenerationSession:
        session.last_active_at = datetime.now()
        with self.get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sessions (project_id, data) VALUES (?, ?)",
                (session.project_id, session.model_dump_json()),
            )
        return session

    # ---- approvals ----

    def create_pending(self, pending: PendingApproval) -> PendingApproval:
        with self.get_connection() as conn:
            existing = self.get_open_pending(pending.project_id)
            if existing is not None:
                raise ApprovalPendingError(pending.project_id, existing.id, existing.tool_name)
            conn.execute(
                "INSERT INTO pending_approvals (id, project_id, state, data) VALUES (?, ?, 'open', ?)",
                (pending.id, pending.project_id, pending.model_dump_json()),
            )
        return pending

    def get_open_pending(self, project_id: str) -> Optional[PendingApproval]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT data FROM pending_approvals WHERE project_id = ? AND state IN ('open', 'approving')",
                (project_id,),
            ).fetchone()
        return PendingApproval.model_validate_json(row["data"]) if row else None

    def get_pending(self, pending_id: str) -> PendingApproval:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT data FROM pending_approvals WHERE id = ? AND state = 'open'",
                (pending_id,),
            ).fetchone()
        if row is None:
            raise PendingApprovalNotFoundError(pending_id)
        return PendingApproval.model_validate_json(row["data"])

    def claim_pending(self, pending_id: str) -> PendingApproval:
        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE pending_approvals SET state = 'approving' WHERE id = ? AND state = 'open'",
                (pending_id,),
            )
            if cursor.rowcount == 0:
                raise PendingApprovalNotFoundError(pending_id)
            row = conn.execute(
                "SELECT data FROM pending_approvals WHERE id = ?",
                (pending_id,),
            ).fetchone()
        return PendingApproval.model_validate_json(row["data"])

    def reopen_pending(self, pending_id: str) -> bool:
        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE pending_approvals SET state = 'open' WHERE id = ? AND state = 'approving'",
                (pending_id,),
            )
        return cursor.rowcount > 0

    def resolve_pending(self, pending_id: str, resolution: str, from_state: str = "open") -> None:
        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE pending_approvals SET state = ? WHERE id = ? AND state = ?",
                (resolution, pending_id, from_state),
            )
            if cursor.rowcount == 0:
                raise PendingApprovalNotFoundError(pending_id)

    def add_rejection(self, rejection: Rejection) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "INSERT INTO rejections (project_id, data) VALUES (?, ?)",
                (rejection.project_id, rejection.model_dump_json()),
            )

    def get_last_rejection(self, project_id: str) -> Optional[Rejection]:
        with self.get_connection() as conn:
            row = conn.execute(
                """
                SELECT data FROM rejections
                WHERE project_id = ? AND acknowledged = 0
                ORDER BY id DESC LIMIT 1
                """,
                (project_id,),
            ).fetchone()
        return Rejection.model_validate_json(row["data"]) if row else None

    def acknowledge_rejections(self, project_id: str) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "UPDATE rejections SET acknowledged = 1 WHERE project_id = ?",
                (project_id,),
            )

    def close(self) -> None:
        with self._lock:
            if self.connection:
                self.connection.close()
                self.connection = None
