"""In-memory registry and seed loading.

Seed files are JSON with the catalog's document shape::

    {
      "functions": [{"publicId": "...", "name": "...", "environment": {...},
                     "capabilities": {...}, "content": "..."}],
      "repositories": [{"publicId": "...", "name": "...", "url": "...", "tags": []}]
    }
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path

from chicon.core.errors import FunctionNotFound, RepositoryNotFound
from chicon.models import Function, Repository


class InMemoryRegistry:
    """Registry backed by dictionaries. Used for local runs and tests."""

    def __init__(
        self,
        functions: Iterable[Function] = (),
        repositories: Iterable[Repository] = (),
    ) -> None:
        self._functions = {function.id: function for function in functions}
        self._repositories = {repository.id: repository for repository in repositories}

    def add_function(self, function: Function) -> None:
        self._functions[function.id] = function

    def add_repository(self, repository: Repository) -> None:
        self._repositories[repository.id] = repository

    async def get_function(self, function_id: str) -> Function:
        try:
            return self._functions[function_id]
        except KeyError:
            raise FunctionNotFound(f"Unknown function: {function_id}", context={"id": function_id}) from None

    async def get_repository(self, repository_id: str) -> Repository:
        try:
            return self._repositories[repository_id]
        except KeyError:
            raise RepositoryNotFound(f"Unknown repository: {repository_id}", context={"id": repository_id}) from None

    async def list_functions(self) -> list[Function]:
        return list(self._functions.values())

    def __len__(self) -> int:
        return len(self._functions) + len(self._repositories)


def load_seed(path: str | Path) -> InMemoryRegistry:
    """Load a seed JSON file into an :class:`InMemoryRegistry`.

    Raises:
        CapabilityRejected: If a function has a malformed capability profile.
        ValueError: If the file is not valid JSON or a document has no id.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return InMemoryRegistry(
        functions=[Function.from_dict(doc) for doc in data.get("functions", [])],
        repositories=[Repository.from_dict(doc) for doc in data.get("repositories", [])],
    )
