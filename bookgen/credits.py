"""
积分闸门
回合开始前预留积分，回合结束后按实际消耗结算

只定义 reserve / commit 契约；具体计费规则不在这里
"""
import logging
import threading
from typing import Dict, Optional, Protocol


logger = logging.getLogger(__name__)


class CreditLedger(Protocol):
    """积分账本接口"""

    def reserve(self, project_id: str, estimated_cost: int) -> bool:
        """预留积分，余额不足时返回 False"""
        ...

    def commit(self, project_id: str, actual_cost: int) -> None:
        """结算：释放该项目的全部预留并扣除实际消耗"""
        ...


class InMemoryCreditLedger:
    """进程内积分账本

    balance=None 表示不限额度（本地开发 / 测试默认）
    """

    def __init__(self, balance: Optional[int] = None):
        self.balance = balance
        self._reserved: Dict[str, int] = {}
        self._spent: Dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def available(self) -> Optional[int]:
        if self.balance is None:
            return None
        return self.balance - sum(self._reserved.values())

    def reserve(self, project_id: str, estimated_cost: int) -> bool:
        with self._lock:
            available = self.available
            if available is not None and available < estimated_cost:
                logger.warning(f"⚠️ 积分不足: 项目 {project_id} 需要 {estimated_cost}，可用 {available}")
                return False
            self._reserved[project_id] = self._reserved.get(project_id, 0) + estimated_cost
            return True

    def commit(self, project_id: str, actual_cost: int) -> None:
        with self._lock:
            self._reserved.pop(project_id, None)
            if self.balance is not None:
                self.balance -= actual_cost
            self._spent[project_id] = self._spent.get(project_id, 0) + actual_cost

    def spent(self, project_id: str) -> int:
        return self._spent.get(project_id, 0)

    def top_up(self, amount: int) -> None:
        with self._lock:
            if self.balance is not None:
                self.balance += amount
