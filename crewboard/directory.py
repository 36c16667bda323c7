"""
Directory resolution: assignment targets → user identities.

User targets resolve to themselves when the directory knows them. Team
targets resolve to the team's membership at the moment of the call; nothing
is cached or snapshotted, so a task's effective recipients can change without
any write to the task.

An unreachable directory raises TransientResolutionFailure. Callers must never
treat that as "nobody is assigned".
"""
import logging
from typing import Dict, Iterable, List, Optional, Set
from urllib.parse import quote

import requests

from .errors import TransientResolutionFailure, ValidationError
from .schema import AssignmentTarget, normalize_identity

logger = logging.getLogger(__name__)


class DirectoryResolver:
    """Base resolver. Subclasses implement user_exists() and team_members()."""

    def user_exists(self, identity: str) -> bool:
        raise NotImplementedError

    def team_members(self, tag: str) -> Set[str]:
        raise NotImplementedError

    def resolve(self, target: AssignmentTarget) -> Set[str]:
        """Singleton (or empty) set for a user, live membership for a team."""
        if target.is_team:
            return {normalize_identity(m) for m in self.team_members(target.ref) if m}
        if self.user_exists(target.ref):
            return {target.ref}
        return set()

    def resolve_all(self, targets: Iterable[AssignmentTarget]) -> Set[str]:
        members = set()
        for target in targets:
            members |= self.resolve(target)
        return members

    def validate_targets(self, targets: Iterable[AssignmentTarget]) -> Dict[AssignmentTarget, Set[str]]:
        """
        Resolve every target, rejecting unknown individual users.

        Returns:
            target → resolved identities (teams may map to an empty set).

        Raises:
            ValidationError naming all unknown users at once.
            TransientResolutionFailure if the directory cannot be reached.
        """
        resolved = {}
        unknown = []
        for target in targets:
            members = self.resolve(target)
            if not target.is_team and not members:
                unknown.append(target.ref)
            resolved[target] = members

        if unknown:
            if len(unknown) == 1:
                msg = f"User does not exist: '{unknown[0]}' is not registered"
            else:
                msg = f"Users do not exist: {', '.join(unknown)}"
            raise ValidationError(msg)
        return resolved


class StaticDirectory(DirectoryResolver):
    """In-memory directory, usually built from the YAML config."""

    def __init__(self, users: Optional[Iterable[str]] = None,
                 teams: Optional[Dict[str, Iterable[str]]] = None):
        self._users: Set[str] = {normalize_identity(u) for u in (users or []) if u}
        self._teams: Dict[str, Set[str]] = {}
        for tag, members in (teams or {}).items():
            self.set_team(tag, members)

    def add_user(self, identity: str):
        self._users.add(normalize_identity(identity))

    def set_team(self, tag: str, members: Iterable[str]):
        """Replace a team's membership. Team members are known users."""
        normalized = {normalize_identity(m) for m in members if m}
        self._teams[tag] = normalized
        self._users |= normalized

    def user_exists(self, identity: str) -> bool:
        return normalize_identity(identity) in self._users

    def team_members(self, tag: str) -> Set[str]:
        return set(self._teams.get(tag, set()))


class HttpDirectory(DirectoryResolver):
    """
    Remote user directory.

    API:
        GET {base}/users/{identity}      → 200 known, 404 unknown
        GET {base}/teams/{tag}/members   → JSON list of identities (404 = empty team)
    """

    def __init__(self, base_url: str, timeout: float = 2.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, path: str) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Directory unreachable: GET {url}: {e}")
            raise TransientResolutionFailure("User directory unreachable", details=str(e))
        if r.status_code >= 500:
            logger.warning(f"Directory error: GET {url} -> {r.status_code}")
            raise TransientResolutionFailure(
                f"User directory returned {r.status_code}"
            )
        return r

    def user_exists(self, identity: str) -> bool:
        r = self._get(f"/users/{quote(normalize_identity(identity), safe='@')}")
        if r.status_code == 404:
            return False
        if not r.ok:
            logger.warning(f"Directory refused user lookup for {identity}: {r.status_code}")
            raise TransientResolutionFailure(f"User directory returned {r.status_code}")
        return True

    def team_members(self, tag: str) -> Set[str]:
        r = self._get(f"/teams/{quote(tag, safe='')}/members")
        if r.status_code == 404:
            return set()
        if not r.ok:
            raise TransientResolutionFailure(f"User directory returned {r.status_code}")
        try:
            payload = r.json()
        except ValueError as e:
            raise TransientResolutionFailure("User directory returned invalid JSON", details=str(e))
        members: List = payload.get("members", []) if isinstance(payload, dict) else payload
        return {normalize_identity(m) for m in members if isinstance(m, str) and m.strip()}
