from dataclasses import dataclass
from typing import List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://wns.community/problems/domain-error"
    errors: List[dict] | None = None
    status_code: int = 400

    def __str__(self) -> str:
        return self.detail
