from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hrmsauth.logging import get_logger
from hrmsauth.storage.errors import ConstraintViolation, MissingReference
from hrmsauth.storage.memory import normalize_email
from hrmsauth.storage.models import (
    Action,
    Credential,
    PasswordResetRecord,
    Permission,
    PermissionOverride,
    Profile,
    RefreshTokenRecord,
    ResolvedGrant,
    ResolvedOverride,
    ResolvedPermission,
    ResolvedProfile,
    ResolvedRole,
    Resource,
    Role,
    RoleLevel,
    RolePermission,
    new_id,
    utcnow,
)

T = TypeVar("T")

_CREDENTIAL_COLUMNS = """
    id, email, profile_id, is_email_verified, email_verification_digest,
    email_verification_expires_at, failed_login_attempts, account_locked_until,
    password_changed_at, created_at
"""


def _constraint_detail(exc: errors.IntegrityError) -> Dict[str, Any]:
    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None) if diag else None
    return {"constraint": name} if name else {}


class PostgresStore:
    """Postgres-backed store for the access-control catalogue and credentials."""

    REQUIRED_TABLES = [
        "permission",
        "role",
        "role_permission",
        "staff_profile",
        "profile_role",
        "profile_custom_permission",
        "staff_credential",
        "credential_refresh_token",
        "credential_password_reset",
    ]

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()
        self.logger.info("postgres_store_ready", pool_min_size=2, pool_max_size=10)

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure every table the store reads exists before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- permissions & roles -------------------------------------------------

    def create_permission(
        self,
        name: str,
        resource: Resource | str,
        actions: Iterable[Action | str],
        *,
        description: str = "",
        is_active: bool = True,
    ) -> Permission:
        action_set = frozenset(Action(a) for a in actions)
        if not action_set:
            raise ConstraintViolation("permission requires at least one action", {"field": "actions"})
        permission = Permission(
            id=new_id(),
            name=name,
            description=description,
            resource=Resource(resource),
            actions=action_set,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO permission (id, name, description, resource, actions, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        permission.id,
                        name,
                        description,
                        permission.resource.value,
                        sorted(a.value for a in action_set),
                        is_active,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("permission name already exists", {"field": "name"})
        return permission

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=row["id"],
            name=row["name"],
            description=row.get("description") or "",
            resource=Resource(row["resource"]),
            actions=frozenset(Action(a) for a in row["actions"]),
            is_active=bool(row["is_active"]),
        )

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM permission WHERE name = %s", (name,)).fetchone()
        return self._permission_from_row(row) if row else None

    def set_permission_active(self, permission_id: str, is_active: bool) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE permission SET is_active = %s WHERE id = %s", (is_active, permission_id)
            )
            if cur.rowcount == 0:
                raise MissingReference("permission not found", {"permission_id": permission_id})

    def create_role(
        self,
        name: str,
        level: RoleLevel | str,
        permissions: Iterable[RolePermission] = (),
        *,
        description: str = "",
        is_active: bool = True,
        is_system_role: bool = False,
    ) -> Role:
        grants = [
            RolePermission(rp.permission_id, frozenset(Action(a) for a in rp.allowed_actions))
            for rp in permissions
        ]
        for grant in grants:
            if not grant.allowed_actions:
                raise ConstraintViolation(
                    "role permission requires at least one action",
                    {"permission_id": grant.permission_id},
                )
        role = Role(
            id=new_id(),
            name=name,
            description=description,
            level=RoleLevel(level),
            permissions=grants,
            is_active=is_active,
            is_system_role=is_system_role,
        )
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO role (id, name, description, level, is_active, is_system_role)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (role.id, name, description, role.level.value, is_active, is_system_role),
                    )
                    for grant in grants:
                        conn.execute(
                            """
                            INSERT INTO role_permission (role_id, permission_id, allowed_actions)
                            VALUES (%s, %s, %s)
                            """,
                            (
                                role.id,
                                grant.permission_id,
                                sorted(a.value for a in grant.allowed_actions),
                            ),
                        )
        except errors.ForeignKeyViolation as exc:
            raise MissingReference("permission not found", _constraint_detail(exc))
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("role name or permission already exists", _constraint_detail(exc))
        return role

    def _role_from_row(self, conn, row: Dict[str, Any]) -> Role:
        grant_rows = conn.execute(
            """
            SELECT permission_id, allowed_actions FROM role_permission
            WHERE role_id = %s ORDER BY seq
            """,
            (row["id"],),
        ).fetchall()
        return Role(
            id=row["id"],
            name=row["name"],
            description=row.get("description") or "",
            level=RoleLevel(row["level"]),
            permissions=[
                RolePermission(
                    permission_id=g["permission_id"],
                    allowed_actions=frozenset(Action(a) for a in g["allowed_actions"]),
                )
                for g in grant_rows
            ],
            is_active=bool(row["is_active"]),
            is_system_role=bool(row["is_system_role"]),
        )

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
            return self._role_from_row(conn, row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
            return self._role_from_row(conn, row) if row else None

    def set_role_active(self, role_id: str, is_active: bool) -> None:
        with self._connect() as conn:
            cur = conn.execute("UPDATE role SET is_active = %s WHERE id = %s", (is_active, role_id))
            if cur.rowcount == 0:
                raise MissingReference("role not found", {"role_id": role_id})

    # -- profiles -----------------------------------------------------------

    def _insert_override(self, conn, profile_id: str, override: PermissionOverride) -> None:
        cur = conn.execute(
            """
            INSERT INTO profile_custom_permission
                (profile_id, permission_id, resource, allowed_actions, is_revoked)
            SELECT %s, id, resource, %s, %s FROM permission WHERE id = %s
            """,
            (
                profile_id,
                sorted(Action(a).value for a in override.allowed_actions),
                override.is_revoked,
                override.permission_id,
            ),
        )
        if cur.rowcount == 0:
            raise MissingReference("permission not found", {"permission_id": override.permission_id})

    def _insert_profile(self, conn, profile: Profile) -> None:
        conn.execute(
            """
            INSERT INTO staff_profile (id, staff_id, display_name, designation, is_active)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (profile.id, profile.staff_id, profile.display_name, profile.designation, profile.is_active),
        )
        for role_id in profile.assigned_role_ids:
            conn.execute(
                "INSERT INTO profile_role (profile_id, role_id) VALUES (%s, %s)",
                (profile.id, role_id),
            )
        for override in profile.custom_permissions:
            self._insert_override(conn, profile.id, override)

    @staticmethod
    def _new_profile(
        staff_id: str,
        display_name: str,
        designation: Optional[str],
        role_ids: Iterable[str],
        custom_permissions: Iterable[PermissionOverride],
        is_active: bool,
    ) -> Profile:
        return Profile(
            id=new_id(),
            staff_id=staff_id,
            display_name=display_name,
            designation=designation,
            assigned_role_ids=list(dict.fromkeys(role_ids)),
            custom_permissions=list(custom_permissions),
            is_active=is_active,
        )

    def create_profile(
        self,
        staff_id: str,
        display_name: str,
        *,
        designation: Optional[str] = None,
        role_ids: Iterable[str] = (),
        custom_permissions: Iterable[PermissionOverride] = (),
        is_active: bool = True,
    ) -> Profile:
        profile = self._new_profile(staff_id, display_name, designation, role_ids, custom_permissions, is_active)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._insert_profile(conn, profile)
        except errors.ForeignKeyViolation as exc:
            raise MissingReference("role not found", _constraint_detail(exc))
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "staff id or custom permission resource already exists", _constraint_detail(exc)
            )
        return profile

    def assign_role(self, profile_id: str, role_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO profile_role (profile_id, role_id) VALUES (%s, %s)
                    ON CONFLICT (profile_id, role_id) DO NOTHING
                    """,
                    (profile_id, role_id),
                )
        except errors.ForeignKeyViolation as exc:
            raise MissingReference("profile or role not found", _constraint_detail(exc))

    def set_custom_permission(self, profile_id: str, override: PermissionOverride) -> ResolvedProfile:
        """Replace any override on the same resource with ``override``."""
        with self._connect() as conn:
            with conn.transaction():
                exists = conn.execute(
                    "SELECT 1 FROM staff_profile WHERE id = %s FOR UPDATE", (profile_id,)
                ).fetchone()
                if not exists:
                    raise MissingReference("profile not found", {"profile_id": profile_id})
                permission = conn.execute(
                    "SELECT resource FROM permission WHERE id = %s", (override.permission_id,)
                ).fetchone()
                if not permission:
                    raise MissingReference(
                        "permission not found", {"permission_id": override.permission_id}
                    )
                conn.execute(
                    "DELETE FROM profile_custom_permission WHERE profile_id = %s AND resource = %s",
                    (profile_id, permission["resource"]),
                )
                self._insert_override(conn, profile_id, override)
        resolved = self.get_profile(profile_id)
        if resolved is None:
            raise MissingReference("profile not found", {"profile_id": profile_id})
        return resolved

    def remove_custom_permission(self, profile_id: str, permission_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM profile_custom_permission WHERE profile_id = %s AND permission_id = %s",
                (profile_id, permission_id),
            )
            return cur.rowcount > 0

    def set_profile_active(self, profile_id: str, is_active: bool) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE staff_profile SET is_active = %s WHERE id = %s", (is_active, profile_id)
            )
            if cur.rowcount == 0:
                raise MissingReference("profile not found", {"profile_id": profile_id})

    @staticmethod
    def _resolved_permission(row: Dict[str, Any]) -> ResolvedPermission:
        return ResolvedPermission(
            id=row["permission_id"],
            name=row["permission_name"],
            resource=Resource(row["resource"]),
            actions=frozenset(Action(a) for a in row["actions"]),
            is_active=bool(row["permission_active"]),
        )

    def _resolve_profile(self, conn, row: Dict[str, Any]) -> ResolvedProfile:
        role_rows = conn.execute(
            """
            SELECT r.id, r.name, r.level, r.is_active
            FROM profile_role pr JOIN role r ON r.id = pr.role_id
            WHERE pr.profile_id = %s ORDER BY pr.seq
            """,
            (row["id"],),
        ).fetchall()
        grants_by_role: Dict[str, List[ResolvedGrant]] = {r["id"]: [] for r in role_rows}
        if role_rows:
            grant_rows = conn.execute(
                """
                SELECT rp.role_id, rp.allowed_actions, p.id AS permission_id,
                       p.name AS permission_name, p.resource, p.actions,
                       p.is_active AS permission_active
                FROM role_permission rp JOIN permission p ON p.id = rp.permission_id
                WHERE rp.role_id = ANY(%s) ORDER BY rp.seq
                """,
                (list(grants_by_role),),
            ).fetchall()
            for g in grant_rows:
                grants_by_role[g["role_id"]].append(
                    ResolvedGrant(
                        permission=self._resolved_permission(g),
                        allowed_actions=frozenset(Action(a) for a in g["allowed_actions"]),
                    )
                )
        override_rows = conn.execute(
            """
            SELECT o.allowed_actions, o.is_revoked, p.id AS permission_id,
                   p.name AS permission_name, p.resource, p.actions,
                   p.is_active AS permission_active
            FROM profile_custom_permission o JOIN permission p ON p.id = o.permission_id
            WHERE o.profile_id = %s ORDER BY o.seq
            """,
            (row["id"],),
        ).fetchall()
        return ResolvedProfile(
            id=row["id"],
            staff_id=row["staff_id"],
            display_name=row["display_name"],
            designation=row.get("designation"),
            roles=tuple(
                ResolvedRole(
                    id=r["id"],
                    name=r["name"],
                    level=RoleLevel(r["level"]),
                    is_active=bool(r["is_active"]),
                    grants=tuple(grants_by_role[r["id"]]),
                )
                for r in role_rows
            ),
            overrides=tuple(
                ResolvedOverride(
                    permission=self._resolved_permission(o),
                    allowed_actions=frozenset(Action(a) for a in o["allowed_actions"]),
                    is_revoked=bool(o["is_revoked"]),
                )
                for o in override_rows
            ),
            is_active=bool(row["is_active"]),
            last_login=row.get("last_login"),
        )

    def get_profile(self, profile_id: str) -> Optional[ResolvedProfile]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM staff_profile WHERE id = %s", (profile_id,)).fetchone()
            if not row:
                return None
            return self._resolve_profile(conn, row)

    def get_profile_by_staff_id(self, staff_id: str) -> Optional[ResolvedProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM staff_profile WHERE staff_id = %s", (staff_id,)
            ).fetchone()
            if not row:
                return None
            return self._resolve_profile(conn, row)

    def touch_last_login(self, profile_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE staff_profile SET last_login = %s WHERE id = %s", (when, profile_id))

    # -- credentials --------------------------------------------------------

    @staticmethod
    def _insert_credential(conn, credential: Credential, password_hash: str) -> None:
        conn.execute(
            """
            INSERT INTO staff_credential
                (id, email, profile_id, password_hash, password_changed_at, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                credential.id,
                credential.email,
                credential.profile_id,
                password_hash,
                credential.password_changed_at,
                credential.created_at,
            ),
        )

    def create_credential(self, email: str, password_hash: str, profile_id: str) -> Credential:
        credential = Credential(
            id=new_id(),
            email=normalize_email(email),
            profile_id=profile_id,
            password_changed_at=utcnow(),
        )
        try:
            with self._connect() as conn:
                self._insert_credential(conn, credential, password_hash)
        except errors.ForeignKeyViolation:
            raise MissingReference("profile not found", {"profile_id": profile_id})
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email", **_constraint_detail(exc)})
        return credential

    def create_account(
        self,
        email: str,
        password_hash: str,
        staff_id: str,
        display_name: str,
        *,
        designation: Optional[str] = None,
        role_ids: Iterable[str] = (),
        custom_permissions: Iterable[PermissionOverride] = (),
    ) -> tuple[Credential, Profile]:
        """Insert a profile and its credential in one transaction."""
        profile = self._new_profile(staff_id, display_name, designation, role_ids, custom_permissions, True)
        credential = Credential(
            id=new_id(),
            email=normalize_email(email),
            profile_id=profile.id,
            password_changed_at=utcnow(),
        )
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._insert_profile(conn, profile)
                    self._insert_credential(conn, credential, password_hash)
        except errors.ForeignKeyViolation as exc:
            raise MissingReference("role not found", _constraint_detail(exc))
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email, staff id or custom permission resource already exists", _constraint_detail(exc)
            )
        return credential, profile

    def _load_credential(self, conn, row: Dict[str, Any]) -> Credential:
        token_rows = conn.execute(
            """
            SELECT token_digest, expires_at, created_at, device_info, source_address
            FROM credential_refresh_token WHERE credential_id = %s ORDER BY created_at
            """,
            (row["id"],),
        ).fetchall()
        reset_rows = conn.execute(
            """
            SELECT token_digest, expires_at, created_at, used
            FROM credential_password_reset WHERE credential_id = %s ORDER BY created_at
            """,
            (row["id"],),
        ).fetchall()
        return Credential(
            id=row["id"],
            email=row["email"],
            profile_id=row["profile_id"],
            is_email_verified=bool(row["is_email_verified"]),
            email_verification_digest=row.get("email_verification_digest"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            refresh_tokens=[RefreshTokenRecord(**t) for t in token_rows],
            password_resets=[PasswordResetRecord(**r) for r in reset_rows],
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            account_locked_until=row.get("account_locked_until"),
            password_changed_at=row.get("password_changed_at"),
            created_at=row["created_at"],
        )

    def _write_credential(self, conn, credential: Credential) -> None:
        conn.execute(
            """
            UPDATE staff_credential SET
                is_email_verified = %s,
                email_verification_digest = %s,
                email_verification_expires_at = %s,
                failed_login_attempts = %s,
                account_locked_until = %s,
                password_changed_at = %s
            WHERE id = %s
            """,
            (
                credential.is_email_verified,
                credential.email_verification_digest,
                credential.email_verification_expires_at,
                credential.failed_login_attempts,
                credential.account_locked_until,
                credential.password_changed_at,
                credential.id,
            ),
        )
        conn.execute(
            "DELETE FROM credential_refresh_token WHERE credential_id = %s", (credential.id,)
        )
        for record in credential.refresh_tokens:
            conn.execute(
                """
                INSERT INTO credential_refresh_token
                    (credential_id, token_digest, expires_at, created_at, device_info, source_address)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    credential.id,
                    record.token_digest,
                    record.expires_at,
                    record.created_at,
                    record.device_info,
                    record.source_address,
                ),
            )
        for reset in credential.password_resets:
            conn.execute(
                """
                INSERT INTO credential_password_reset
                    (token_digest, credential_id, expires_at, created_at, used)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (token_digest) DO UPDATE SET used = EXCLUDED.used
                """,
                (reset.token_digest, credential.id, reset.expires_at, reset.created_at, reset.used),
            )

    def get_credential(self, email: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_CREDENTIAL_COLUMNS} FROM staff_credential WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
            if not row:
                return None
            return self._load_credential(conn, row)

    def get_password_hash(self, email: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM staff_credential WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return row["password_hash"] if row else None

    def update_credential(self, email: str, mutate: Callable[[Credential], T]) -> Optional[T]:
        """Lock the credential row, apply ``mutate`` and write it back in one transaction."""
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    f"SELECT {_CREDENTIAL_COLUMNS} FROM staff_credential WHERE email = %s FOR UPDATE",
                    (normalize_email(email),),
                ).fetchone()
                if not row:
                    return None
                credential = self._load_credential(conn, row)
                outcome = mutate(credential)
                self._write_credential(conn, credential)
                return outcome

    def set_password(self, email: str, password_hash: str, changed_at: datetime) -> bool:
        """Replace the password hash and revoke every refresh token in one transaction."""
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE staff_credential SET password_hash = %s, password_changed_at = %s
                    WHERE email = %s RETURNING id
                    """,
                    (password_hash, changed_at, normalize_email(email)),
                ).fetchone()
                if not row:
                    return False
                conn.execute(
                    "DELETE FROM credential_refresh_token WHERE credential_id = %s", (row["id"],)
                )
                return True

    def consume_password_reset(self, token_digest: str, now: datetime) -> Optional[str]:
        """Mark the matching unused, unexpired reset record used; return its email."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE credential_password_reset r SET used = TRUE
                FROM staff_credential c
                WHERE r.token_digest = %s AND r.used = FALSE AND r.expires_at > %s
                  AND c.id = r.credential_id
                RETURNING c.email
                """,
                (token_digest, now),
            ).fetchone()
        return row["email"] if row else None

    def consume_email_verification(self, token_digest: str, now: datetime) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE staff_credential SET
                    is_email_verified = TRUE,
                    email_verification_digest = NULL,
                    email_verification_expires_at = NULL
                WHERE email_verification_digest = %s AND email_verification_expires_at > %s
                RETURNING email
                """,
                (token_digest, now),
            ).fetchone()
        return row["email"] if row else None
