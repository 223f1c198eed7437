"""账本文件存储：JSON 格式，写入时先写临时文件再原子替换"""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import MergeConsistencyViolation
from .merge import Ledger, MergeCoordinator, merge_submission
from .models import DeviceSubmission

logger = logging.getLogger(__name__)

_coordinator = MergeCoordinator()


def process_exists(pid: int) -> bool:
    """用信号0探测进程；Windows 上信号0是 CTRL_C_EVENT，只能按存在处理"""
    if pid <= 0:
        return False
    if os.name == "nt":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        # 无权限等情况说明进程存在
        return True
    return True


class LedgerStore:
    def __init__(self, path: Path, coordinator: Optional[MergeCoordinator] = None):
        self.path = Path(path)
        self.coordinator = coordinator or _coordinator

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def load(self) -> Ledger:
        if not self.path.exists():
            return Ledger()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise MergeConsistencyViolation(f"无法读取账本: {e}", key=str(self.path)) from e
        if not isinstance(data, dict):
            raise MergeConsistencyViolation("账本格式不正确", key=str(self.path))
        return Ledger.from_dict(data)

    def save(self, ledger: Ledger) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(ledger.to_dict(), f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def _lock_owner_alive(self) -> bool:
        """锁文件里记录的进程是否仍在运行；内容无法识别时按仍被持有处理"""
        try:
            pid = int(self.lock_path.read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return False
        except (OSError, ValueError):
            return True
        return process_exists(pid)

    def _create_lock(self) -> int:
        try:
            return os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as e:
            if self._lock_owner_alive():
                raise MergeConsistencyViolation("账本正被另一个进程合并", key=str(self.lock_path)) from e
        logger.warning(f"锁文件的进程已不存在，删除残留的锁: {self.lock_path}")
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass
        try:
            return os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as e:
            raise MergeConsistencyViolation("账本正被另一个进程合并", key=str(self.lock_path)) from e

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        """跨进程互斥：锁文件存在且持有进程仍在运行，说明另一个进程正在合并"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = self._create_lock()
        try:
            os.write(fd, str(os.getpid()).encode())
            os.close(fd)
            yield
        finally:
            try:
                os.unlink(self.lock_path)
            except OSError:
                logger.warning(f"无法删除锁文件 {self.lock_path}", exc_info=True)

    def merge(self, submission: DeviceSubmission) -> Ledger:
        """读取、合并、写回；任一步失败都不会留下部分写入的账本"""
        target = str(self.path.resolve())
        with self.coordinator.acquire(target), self._file_lock():
            merged = merge_submission(self.load(), submission)
            self.save(merged)
        logger.info(f"账本已更新: {self.path}")
        return merged
