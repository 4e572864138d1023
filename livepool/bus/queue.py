"""
异步事件总线模块 - 平台适配器与实况核心之间的解耦通信。

采用生产者-消费者模式，基于 asyncio.Queue 实现：

  平台适配器 → publish() → 事件队列 → dispatch() → 按事件类型找到订阅者 → 处理器

【核心设计】
- 事件按到达顺序逐个取出
- 每个处理器在独立的 asyncio.Task 中运行：处理器内部的 await
  （调用平台 API）不会阻塞后续事件的分发。
  因此共享状态的修改必须在第一个 await 之前同步完成（见 SessionPool.route）
- 单个处理器抛出的异常只记录日志，不影响其他处理器和后续事件

【Java 开发者类比】
- asyncio.Queue 类似于 Java 的 LinkedBlockingQueue
- subscribe + dispatch 类似于 Spring 的 @EventListener + @Async
"""

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

EventHandler = Callable[[Any], Awaitable[None]]


class EventBus:
    """
    异步事件总线。

    属性:
        events: 待分发的事件队列
        _subscribers: {事件类型: [处理器列表]}
        _tasks: 正在运行的处理器任务（持有引用防止被垃圾回收）
        _running: 分发器运行状态标志
    """

    def __init__(self):
        self.events: asyncio.Queue[Any] = asyncio.Queue()
        self._subscribers: dict[type, list[EventHandler]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    async def publish(self, event: Any) -> None:
        """发布事件（平台适配器调用）。"""
        await self.events.put(event)

    def subscribe(self, event_type: type, handler: EventHandler) -> None:
        """订阅指定类型的事件。同一类型可以注册多个处理器。"""
        self._subscribers.setdefault(event_type, []).append(handler)

    async def dispatch(self) -> None:
        """
        事件分发器（后台常驻任务）。

        使用 wait_for 超时机制（1秒）避免在 stop() 时长时间阻塞。
        """
        self._running = True
        while self._running:
            try:
                event = await asyncio.wait_for(self.events.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            self.dispatch_one(event)

    def dispatch_one(self, event: Any) -> list[asyncio.Task]:
        """把单个事件交给所有订阅者，返回创建的任务（测试中可 await）。"""
        tasks = []
        for handler in self._subscribers.get(type(event), []):
            task = asyncio.create_task(self._run_handler(handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            tasks.append(task)
        return tasks

    async def _run_handler(self, handler: EventHandler, event: Any) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error(f"Error handling {type(event).__name__}: {e}")

    def stop(self) -> None:
        """停止分发器，并取消仍在运行的处理器任务。"""
        self._running = False
        for task in list(self._tasks):
            task.cancel()

    @property
    def pending(self) -> int:
        """待分发的事件数量。"""
        return self.events.qsize()
