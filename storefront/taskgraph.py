"""
Tiny async task graph.

Each node is an async callable that receives the results of the nodes it
depends on as keyword arguments (plus the graph inputs). Nodes whose
dependencies are satisfied run concurrently; the run returns every node's
result by name.

    g = TaskGraph()
    g.add("owner", load_owner, inputs=("owner_id",))
    g.add("prices", load_prices, inputs=("cart",))
    g.add("breakdown", compute, after=("prices",), inputs=("cart",))
    results = await g.run(owner_id="u1", cart=cart)
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Tuple

NodeFn = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class Node:
    name: str
    fn: NodeFn
    after: Tuple[str, ...]
    inputs: Tuple[str, ...]


class TaskGraph:
    def __init__(self) -> None:
        self._nodes: Dict[str, Node] = {}

    def add(self, name: str, fn: NodeFn, *, after=(), inputs=()) -> "TaskGraph":
        if name in self._nodes:
            raise ValueError(f"duplicate node {name!r}")
        for dep in after:
            if dep not in self._nodes:
                # nodes must be added after their dependencies, which also
                # rules out cycles
                raise ValueError(f"node {name!r} depends on unknown {dep!r}")
        self._nodes[name] = Node(name, fn, tuple(after), tuple(inputs))
        return self

    def waves(self) -> List[List[str]]:
        done: set = set()
        waves = []
        pending = list(self._nodes)
        while pending:
            ready = [n for n in pending
                     if all(d in done for d in self._nodes[n].after)]
            waves.append(ready)
            done.update(ready)
            pending = [n for n in pending if n not in done]
        return waves

    async def run(self, **inputs: Any) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        for wave in self.waves():
            outs = await asyncio.gather(
                *(self._call(self._nodes[n], inputs, results) for n in wave)
            )
            results.update(zip(wave, outs))
        return results

    @staticmethod
    async def _call(node: Node, inputs: Dict[str, Any],
                    results: Dict[str, Any]) -> Any:
        kwargs = {k: inputs[k] for k in node.inputs}
        kwargs.update({d: results[d] for d in node.after})
        return await node.fn(**kwargs)
