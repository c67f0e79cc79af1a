"""Git Smart HTTP path routing and protocol constants"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from forgejo_bridge.core.exceptions import ValidationError


class GitOperation(str, Enum):
    """Smart HTTP endpoints served through the mirror cache"""
    INFO_REFS = "info-refs"
    UPLOAD_PACK = "upload-pack"
    RECEIVE_PACK = "receive-pack"

    @property
    def path_suffix(self) -> str:
        return _SUFFIX_BY_OPERATION[self]

    @classmethod
    def from_path_suffix(cls, suffix: str) -> "GitOperation":
        try:
            return _OPERATION_BY_SUFFIX[suffix]
        except KeyError:
            raise ValueError(f"Unknown git transport endpoint: {suffix}")


_SUFFIX_BY_OPERATION = {
    GitOperation.INFO_REFS: "info/refs",
    GitOperation.UPLOAD_PACK: "git-upload-pack",
    GitOperation.RECEIVE_PACK: "git-receive-pack",
}
_OPERATION_BY_SUFFIX = {v: k for k, v in _SUFFIX_BY_OPERATION.items()}


class GitContentType:
    """Git protocol content types"""
    UPLOAD_PACK_ADVERTISEMENT = "application/x-git-upload-pack-advertisement"
    RECEIVE_PACK_ADVERTISEMENT = "application/x-git-receive-pack-advertisement"

    UPLOAD_PACK_REQUEST = "application/x-git-upload-pack-request"
    RECEIVE_PACK_REQUEST = "application/x-git-receive-pack-request"

    UPLOAD_PACK_RESULT = "application/x-git-upload-pack-result"
    RECEIVE_PACK_RESULT = "application/x-git-receive-pack-result"


TRANSPORT_PATH_RE = re.compile(
    r"^/(?P<owner>[^/]+)/(?P<repo>[^/]+)\.git/"
    r"(?P<suffix>info/refs|git-upload-pack|git-receive-pack)$"
)


def validate_path_component(component: str) -> None:
    """Reject owner/repository names that could escape the cache root"""
    if not component:
        raise ValidationError("Empty path component")

    if ".." in component or "/" in component or "\\" in component:
        raise ValidationError(f"Invalid path component: {component}")

    if "\x00" in component:
        raise ValidationError("Path component contains null byte")

    if component.startswith("."):
        raise ValidationError("Path component cannot start with dot")


@dataclass(frozen=True)
class MirrorKey:
    """Identifies one mirrored upstream repository"""
    owner: str
    repository: str

    def __post_init__(self):
        validate_path_component(self.owner)
        validate_path_component(self.repository)

    def __str__(self) -> str:
        return f"{self.owner}/{self.repository}"


@dataclass(frozen=True)
class TransportMatch:
    key: MirrorKey
    operation: GitOperation

    @property
    def path_info(self) -> str:
        return f"/{self.key.owner}/{self.key.repository}.git/{self.operation.path_suffix}"


def match_transport_path(path: str) -> Optional[TransportMatch]:
    """Return the (owner, repo, operation) addressed by a smart HTTP path.

    Anything that is not exactly ``/{owner}/{repo}.git/{endpoint}`` with a
    safe owner and repository returns None and must be left untouched.
    """
    match = TRANSPORT_PATH_RE.match(path)
    if not match:
        return None

    try:
        key = MirrorKey(match.group("owner"), match.group("repo"))
    except ValidationError:
        return None

    return TransportMatch(key, GitOperation.from_path_suffix(match.group("suffix")))
