from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Deque, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription(Generic[T]):
    """单个订阅者的有界缓冲区，溢出时丢弃最旧的数据"""

    def __init__(self, broadcaster: "ResultBroadcaster[T]", capacity: int):
        self._broadcaster = broadcaster
        self._buffer: Deque[T] = deque(maxlen=capacity)
        self._cond = threading.Condition()
        self.dropped = 0
        self.closed = False

    def _offer(self, item: T) -> None:
        with self._cond:
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._buffer.append(item)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """取出最早的一条；超时或已关闭且无数据时返回 None"""
        with self._cond:
            if not self._buffer and not self.closed:
                self._cond.wait_for(lambda: self._buffer or self.closed, timeout=timeout)
            if self._buffer:
                return self._buffer.popleft()
            return None

    def drain(self) -> List[T]:
        with self._cond:
            items = list(self._buffer)
            self._buffer.clear()
            return items

    def close(self) -> None:
        self._broadcaster._remove(self)
        with self._cond:
            self.closed = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._buffer)


class ResultBroadcaster(Generic[T]):
    """
    非阻塞的发布/订阅通道

    - 新订阅者立即收到最近一次发布的数据（replay 1）
    - 每个订阅者最多缓冲 capacity 条，慢消费者只会丢数据，不会阻塞发布方
    """

    def __init__(self, capacity: int = 64):
        self.capacity = capacity
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription[T]] = []
        self._listeners: List[Callable[[T], None]] = []
        self._last: Optional[T] = None
        self.published = 0

    def subscribe(self) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self, self.capacity)
        with self._lock:
            if self._last is not None:
                sub._offer(self._last)
            self._subscriptions.append(sub)
        return sub

    def add_listener(self, listener: Callable[[T], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[T], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, item: T) -> None:
        with self._lock:
            self._last = item
            self.published += 1
            subscriptions = list(self._subscriptions)
            listeners = list(self._listeners)
        for sub in subscriptions:
            sub._offer(item)
        for listener in listeners:
            try:
                listener(item)
            except Exception as e:
                logger.exception("订阅回调出错: %s", e)

    @property
    def last(self) -> Optional[T]:
        with self._lock:
            return self._last

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _remove(self, sub: Subscription[T]) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
