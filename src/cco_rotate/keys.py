"""Key lifecycle manager: the rotation state machine.

    Discovering -> BackingUp -> RetiringOld -> Minting -> Installing
        -> ConfirmingNewKey -> Committed

Any state may fail into ``Failed``; the context keeps the last state that
completed so a later run (or ``run(ctx, start=...)``) can pick up from
there.  Every state is idempotent: already-inactive keys are skipped,
already-deleted keys are ignored, an already-installed key is not
rewritten.

Two rules hold at every intermediate state:

- the key referenced by the current root secret is never deactivated or
  deleted;
- while the root secret references a key on the managed principal, that
  principal never drops to zero Active keys.

Breaking either raises InvariantViolation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from cco_rotate.backup.store import BackupStore
from cco_rotate.clients.cluster import ClusterClient
from cco_rotate.clients.iam import IamClient
from cco_rotate.errors import (
    ConfigurationError,
    InvariantViolation,
    KeyConfirmationError,
    NotFoundError,
    PermissionDeniedError,
    RotationError,
    TransientError,
)
from cco_rotate.models import (
    AccessKey,
    AccessKeyStatus,
    BackupKind,
    CallerIdentity,
    ClusterSecret,
    IAMPrincipal,
    KeyRotationResult,
    KeyState,
    RootSecret,
)
from cco_rotate.polling import Backoff

logger = logging.getLogger(__name__)

# AWS allows two access keys per IAM user
MAX_KEYS_PER_PRINCIPAL = 2

ACCESS_KEY_ID = "aws_access_key_id"
SECRET_ACCESS_KEY = "aws_secret_access_key"
LAST_ROTATED_AT = "cco-rotate/last-rotated-at"
ROTATED_BY = "cco-rotate/rotated-by"
PREVIOUS_KEY_ID = "cco-rotate/previous-key-id"

STATE_ORDER: tuple[KeyState, ...] = (
    KeyState.DISCOVERING,
    KeyState.BACKING_UP,
    KeyState.RETIRING_OLD,
    KeyState.MINTING,
    KeyState.INSTALLING,
    KeyState.CONFIRMING_NEW_KEY,
    KeyState.COMMITTED,
)


# --- Root secret mapping ---


def root_secret_from_cluster(secret: ClusterSecret) -> RootSecret:
    annotations = secret.annotations
    last_rotated = annotations.get(LAST_ROTATED_AT)
    return RootSecret(
        namespace=secret.namespace,
        name=secret.name,
        key_id=secret.data.get(ACCESS_KEY_ID, ""),
        secret=secret.data.get(SECRET_ACCESS_KEY, ""),
        last_rotated_at=datetime.fromisoformat(last_rotated) if last_rotated else None,
        rotated_by=annotations.get(ROTATED_BY, ""),
        previous_key_id=annotations.get(PREVIOUS_KEY_ID, ""),
    )


def root_secret_data(root: RootSecret) -> dict[str, str]:
    return {
        ACCESS_KEY_ID: root.key_id,
        SECRET_ACCESS_KEY: root.secret.get_secret_value(),
    }


def root_secret_annotations(root: RootSecret) -> dict[str, str]:
    return {
        LAST_ROTATED_AT: root.last_rotated_at.isoformat() if root.last_rotated_at else "",
        ROTATED_BY: root.rotated_by,
        PREVIOUS_KEY_ID: root.previous_key_id,
    }


def root_secret_backup_payload(root: RootSecret) -> dict[str, Any]:
    """Backup payload for the root secret.  Includes the secret value."""
    return {
        "namespace": root.namespace,
        "name": root.name,
        "key_id": root.key_id,
        "secret": root.secret.get_secret_value(),
        "last_rotated_at": root.last_rotated_at.isoformat() if root.last_rotated_at else None,
        "rotated_by": root.rotated_by,
        "previous_key_id": root.previous_key_id,
    }


# --- State machine ---


@dataclass
class RotationContext:
    """Mutable state carried through the key state machine."""

    principal: IAMPrincipal
    caller_arn: str = ""
    keys: list[AccessKey] | None = None
    root_before: RootSecret | None = None
    new_key: AccessKey | None = None
    installed: RootSecret | None = None
    state: KeyState = KeyState.DISCOVERING
    last_successful_state: KeyState | None = None
    backup_ids: list[str] = field(default_factory=list)
    retired_key_ids: list[str] = field(default_factory=list)
    deactivated_key_ids: list[str] = field(default_factory=list)
    planned: list[str] = field(default_factory=list)
    rolled_back: bool = False
    error: str | None = None

    @property
    def root_key_id(self) -> str:
        """The key the cluster's root secret currently points at."""
        if self.installed is not None:
            return self.installed.key_id
        return self.root_before.key_id if self.root_before else ""

    def result(self) -> KeyRotationResult:
        return KeyRotationResult(
            state=self.state,
            last_successful_state=self.last_successful_state,
            new_key_id=self.new_key.key_id if self.new_key else "",
            previous_key_id=self.root_before.key_id if self.root_before else "",
            retired_key_ids=list(self.retired_key_ids),
            deactivated_key_ids=list(self.deactivated_key_ids),
            backup_ids=list(self.backup_ids),
            rolled_back=self.rolled_back,
            planned=list(self.planned),
            error=self.error,
        )


class KeyLifecycleManager:
    """Runs the rotation state machine against one IAM principal."""

    def __init__(
        self,
        iam: IamClient,
        cluster: ClusterClient,
        backups: BackupStore,
        root_secret_namespace: str = "kube-system",
        root_secret_name: str = "aws-creds",
        dry_run: bool = False,
        orphan_key_max_age: timedelta = timedelta(0),
        backoff: Backoff | None = None,
        confirm_backoff: Backoff | None = None,
        _now: Callable[[], datetime] | None = None,
    ) -> None:
        self._iam = iam
        self._cluster = cluster
        self._backups = backups
        self._secret_ns = root_secret_namespace
        self._secret_name = root_secret_name
        self._dry_run = dry_run
        self._max_age = orphan_key_max_age
        self._backoff = backoff or Backoff()
        self._confirm_backoff = confirm_backoff or Backoff(attempts=8, base_delay=2.0)
        self._now = _now or (lambda: datetime.now(tz=UTC))
        self._handlers: dict[KeyState, Callable[[RotationContext], None]] = {
            KeyState.DISCOVERING: self._discover,
            KeyState.BACKING_UP: self._back_up,
            KeyState.RETIRING_OLD: self._retire_old,
            KeyState.MINTING: self._mint,
            KeyState.INSTALLING: self._install,
            KeyState.CONFIRMING_NEW_KEY: self._confirm,
            KeyState.COMMITTED: self._commit,
        }

    def run(
        self,
        ctx: RotationContext,
        start: KeyState = KeyState.DISCOVERING,
    ) -> KeyRotationResult:
        """Drive *ctx* from *start* to Committed.

        On failure ``ctx.state`` becomes ``Failed`` (with
        ``last_successful_state`` preserved) and the error is re-raised.
        """
        if start not in self._handlers:
            raise ConfigurationError(f"Cannot start key rotation in state {start}")

        for state in STATE_ORDER[STATE_ORDER.index(start):]:
            ctx.state = state
            logger.debug("Key rotation for %s entering %s", ctx.principal.name, state)
            try:
                self._handlers[state](ctx)
            except RotationError as exc:
                ctx.error = f"{state}: {exc}"
                ctx.state = KeyState.FAILED
                logger.error("Key rotation failed in %s: %s", state, exc)
                raise
            ctx.last_successful_state = state

        return ctx.result()

    def read_root_secret(self) -> RootSecret:
        try:
            secret = self._backoff.call(
                self._cluster.get_secret, self._secret_ns, self._secret_name,
            )
        except NotFoundError as exc:
            raise ConfigurationError(
                f"root secret {self._secret_ns}/{self._secret_name} not found"
            ) from exc
        return root_secret_from_cluster(secret)

    # --- States ---

    def _discover(self, ctx: RotationContext) -> None:
        ctx.keys = self._list_keys(ctx)
        ctx.root_before = self.read_root_secret()
        logger.info(
            "Principal %s has %d key(s); root secret references %s",
            ctx.principal.name, len(ctx.keys), ctx.root_before.key_id or "nothing",
        )
        if len(ctx.keys) >= MAX_KEYS_PER_PRINCIPAL:
            logger.info("Key quota reached; old keys are retired before minting")
        self._confirm_pending_root(ctx)

    def _back_up(self, ctx: RotationContext) -> None:
        root = self._require(ctx.root_before, "root secret snapshot")
        keys = self._keys(ctx)
        if self._dry_run:
            self._plan(ctx, f"back up metadata of {len(keys)} key(s) and the root secret")
            return
        ctx.backup_ids.append(self._backups.write(
            BackupKind.ACCESS_KEY_META,
            {
                "principal": ctx.principal.name,
                "root_key_id": root.key_id,
                "keys": [k.metadata() for k in keys],
            },
        ))
        ctx.backup_ids.append(self._backups.write(
            BackupKind.ROOT_SECRET, root_secret_backup_payload(root),
        ))
        logger.info("Wrote backups %s", ", ".join(ctx.backup_ids))

    def _retire_old(self, ctx: RotationContext) -> None:
        keys = self._keys(ctx)
        now = self._now()
        retire: list[tuple[AccessKey, str]] = []
        kept: list[AccessKey] = []
        for key in keys:
            if key.key_id == ctx.root_key_id:
                continue
            reason = self._retire_reason(ctx, key, now)
            if reason is None:
                kept.append(key)
            else:
                retire.append((key, reason))

        # Make room for the new key, oldest first
        kept.sort(key=lambda k: k.created_at)
        while kept and len(keys) - len(retire) >= MAX_KEYS_PER_PRINCIPAL:
            retire.append((kept.pop(0), "quota"))

        for key in kept:
            logger.info("Keeping inactive key %s as a rollback target", key.key_id)

        for key, reason in retire:
            self._retire(ctx, key, reason)

    def _mint(self, ctx: RotationContext) -> None:
        keys = self._keys(ctx)
        if self._dry_run:
            self._plan(ctx, f"create a new access key for {ctx.principal.name}")
            return
        if len(keys) >= MAX_KEYS_PER_PRINCIPAL:
            raise InvariantViolation(
                f"{ctx.principal.name} already holds {len(keys)} keys; cannot mint"
            )
        # Not retried: a lost response would leave an untracked key behind
        ctx.new_key = self._iam.create_access_key(ctx.principal.name)
        keys.append(ctx.new_key)
        logger.info("Minted access key %s for %s", ctx.new_key.key_id, ctx.principal.name)

    def _install(self, ctx: RotationContext) -> None:
        root = self._require(ctx.root_before, "root secret snapshot")
        if self._dry_run:
            self._plan(ctx, f"install the new key into {self._secret_ns}/{self._secret_name}")
            return
        new_key = self._require(ctx.new_key, "newly minted key")
        if root.key_id == new_key.key_id:
            logger.info("Root secret already references %s", new_key.key_id)
            ctx.installed = root
            return
        if new_key.secret is None:
            raise ConfigurationError(
                f"secret of key {new_key.key_id} is unavailable; it cannot be installed"
            )

        installed = RootSecret(
            namespace=self._secret_ns,
            name=self._secret_name,
            key_id=new_key.key_id,
            secret=new_key.secret,
            last_rotated_at=self._now(),
            rotated_by=ctx.caller_arn,
            previous_key_id=root.key_id,
        )
        self._write_root_secret(installed)
        ctx.installed = installed
        logger.info(
            "Installed key %s into %s/%s (previous %s)",
            new_key.key_id, self._secret_ns, self._secret_name, root.key_id,
        )

    def _confirm(self, ctx: RotationContext) -> None:
        if self._dry_run:
            self._plan(ctx, "confirm the new key authenticates against AWS")
            return
        new_key = self._require(ctx.new_key, "newly minted key")
        try:
            caller = self._authenticate(new_key)
        except RotationError as exc:
            self._roll_back_install(ctx)
            raise KeyConfirmationError(
                f"key {new_key.key_id} never became usable: {exc}. "
                f"Root secret restored; backups: {', '.join(ctx.backup_ids) or 'none'}"
            ) from exc
        logger.info("Key %s confirmed as %s", new_key.key_id, caller.arn)

    def _commit(self, ctx: RotationContext) -> None:
        root = self._require(ctx.root_before, "root secret snapshot")
        previous_id = root.key_id
        if ctx.new_key is not None and previous_id == ctx.new_key.key_id:
            return
        previous = next((k for k in self._keys(ctx) if k.key_id == previous_id), None)
        if previous is None:
            logger.info(
                "Superseded key %s is not on %s; nothing to deactivate",
                previous_id or "-", ctx.principal.name,
            )
            return
        if not previous.active:
            return
        if self._dry_run:
            self._plan(ctx, f"deactivate superseded key {previous_id}")
            return
        self._deactivate(ctx, previous)
        logger.info("Deactivated superseded key %s; deletion deferred", previous_id)

    # --- Confirmation ---

    def _authenticate(self, key: AccessKey) -> CallerIdentity:
        return self._confirm_backoff.call(
            lambda: self._iam.with_access_key(key).get_caller_identity(),
            retry_on=(TransientError, PermissionDeniedError),
        )

    def _confirm_pending_root(self, ctx: RotationContext) -> None:
        """Confirm a root key left installed but unconfirmed by an interrupted run.

        That state shows as a root key on the principal whose predecessor is
        still Active.  Nothing may be retired until the root key has
        authenticated, or the last confirmed key could be lost.
        """
        root = ctx.root_before
        if root is None or not root.previous_key_id:
            return
        keys = {k.key_id: k for k in self._keys(ctx)}
        current = keys.get(root.key_id)
        previous = keys.get(root.previous_key_id)
        if current is None or previous is None or not previous.active:
            return
        if current.key_id == previous.key_id:
            return

        logger.info(
            "Root key %s still has its predecessor %s active; confirming it first",
            current.key_id, previous.key_id,
        )
        try:
            caller = self._authenticate(current.model_copy(update={"secret": root.secret}))
        except RotationError as exc:
            raise InvariantViolation(
                f"root secret references {current.key_id}, which does not authenticate, "
                f"while the key it replaced ({previous.key_id}) is still active: {exc}. "
                "Restore the root secret from a backup with 'cco-rotate rollback'"
            ) from exc
        logger.info("Root key %s confirmed as %s", current.key_id, caller.arn)

    # --- Retirement ---

    def _retire_reason(
        self, ctx: RotationContext, key: AccessKey, now: datetime,
    ) -> str | None:
        """Why *key* should be retired, or ``None`` to keep it."""
        root = ctx.root_before
        if key.active:
            if root is not None and key.key_id == root.previous_key_id:
                return "superseded"
            return "orphan"
        if (
            root is not None
            and key.key_id == root.previous_key_id
            and root.last_rotated_at is not None
        ):
            retired_since = root.last_rotated_at
        else:
            retired_since = key.created_at
        if now - retired_since < self._max_age:
            return None
        return "inactive"

    def _retire(self, ctx: RotationContext, key: AccessKey, reason: str) -> None:
        """Deactivate then delete *key*.  Deactivation failure leaves it untouched."""
        if self._dry_run:
            self._plan(ctx, f"retire {reason} key {key.key_id}")
            return
        if key.active:
            try:
                self._deactivate(ctx, key)
            except NotFoundError:
                self._forget(ctx, key)
                return
        self._guard(ctx, key)
        try:
            self._backoff.call(self._iam.delete_access_key, ctx.principal.name, key.key_id)
        except NotFoundError:
            logger.debug("Key %s already deleted", key.key_id)
        self._forget(ctx, key)
        ctx.retired_key_ids.append(key.key_id)
        logger.info("Retired %s key %s", reason, key.key_id)

    def _deactivate(self, ctx: RotationContext, key: AccessKey) -> None:
        self._guard(ctx, key)
        self._backoff.call(
            self._iam.update_access_key_status,
            ctx.principal.name, key.key_id, AccessKeyStatus.INACTIVE,
        )
        key.status = AccessKeyStatus.INACTIVE
        ctx.deactivated_key_ids.append(key.key_id)

    def _guard(self, ctx: RotationContext, key: AccessKey) -> None:
        """Refuse to touch a key if doing so could lock the cluster out."""
        if key.key_id == ctx.root_key_id:
            raise InvariantViolation(
                f"refusing to retire {key.key_id}: the root secret references it"
            )
        keys = self._keys(ctx)
        if any(k.key_id == ctx.root_key_id for k in keys):
            remaining = [k for k in keys if k.active and k.key_id != key.key_id]
            if not remaining:
                raise InvariantViolation(
                    f"refusing to retire {key.key_id}: {ctx.principal.name} "
                    "would have no active key"
                )

    def _forget(self, ctx: RotationContext, key: AccessKey) -> None:
        ctx.keys = [k for k in self._keys(ctx) if k.key_id != key.key_id]

    # --- Rollback of an unconfirmed install ---

    def _roll_back_install(self, ctx: RotationContext) -> None:
        root = ctx.root_before
        if ctx.installed is None or root is None or ctx.installed.key_id == root.key_id:
            return
        logger.warning(
            "Restoring root secret to key %s; unconfirmed key %s is left as an orphan",
            root.key_id, ctx.installed.key_id,
        )
        try:
            self._write_root_secret(root)
        except RotationError as exc:
            raise RotationError(
                f"could not restore root secret after failed confirmation ({exc}); "
                f"restore manually from backups: {', '.join(ctx.backup_ids) or 'none'}"
            ) from exc
        ctx.installed = None
        ctx.rolled_back = True

    # --- Helpers ---

    def _write_root_secret(self, root: RootSecret) -> None:
        self._backoff.call(
            self._cluster.update_secret,
            self._secret_ns,
            self._secret_name,
            root_secret_data(root),
            root_secret_annotations(root),
        )

    def _list_keys(self, ctx: RotationContext) -> list[AccessKey]:
        return self._backoff.call(self._iam.list_access_keys, ctx.principal.name)

    def _keys(self, ctx: RotationContext) -> list[AccessKey]:
        if ctx.keys is None:
            ctx.keys = self._list_keys(ctx)
        return ctx.keys

    def _require(self, value: Any, what: str) -> Any:
        if value is None:
            raise ConfigurationError(f"{what} is missing; resume from an earlier state")
        return value

    def _plan(self, ctx: RotationContext, step: str) -> None:
        logger.info("[dry-run] Would %s", step)
        ctx.planned.append(step)
