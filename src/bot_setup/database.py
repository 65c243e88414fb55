"""
PostgreSQL administration through psql.

Statements are fed to psql on stdin with values bound as psql variables
(``:'literal'`` / ``:"identifier"``), so user-supplied names and passwords
are quoted by psql itself. Creation steps query the catalog first: an
object that already exists is treated as satisfied, and every psql failure
is a real error.
"""

import logging

from .commands import CommandRunner
from .errors import CommandError

logger = logging.getLogger(__name__)

CONNECTED_MARKER = "connected"


class DatabaseAdmin:
    """Runs administrative statements as the PostgreSQL superuser.

    Args:
        runner: CommandRunner for psql
        host: Server host
        port: Server port
        superuser: Admin role name
        superuser_password: Admin password (None = rely on .pgpass/peer auth)
        via_sudo: Run psql as the superuser OS account through ``sudo -u``
            over the local socket instead of connecting by host/port
    """

    def __init__(
        self,
        runner: CommandRunner,
        host: str = "localhost",
        port: int = 5432,
        superuser: str = "postgres",
        superuser_password: str | None = None,
        via_sudo: bool = False,
    ):
        self.runner = runner
        self.host = host
        self.port = port
        self.superuser = superuser
        self.superuser_password = superuser_password
        self.via_sudo = via_sudo

    def _psql_base(self) -> list[str]:
        if self.via_sudo:
            return ["sudo", "-u", self.superuser, "psql"]
        return ["psql", "-U", self.superuser, "-h", self.host, "-p", str(self.port)]

    def execute(self, sql: str, variables: dict[str, str] | None = None, dbname: str = "postgres") -> str:
        """Run ``sql`` with bound variables and return the unaligned output.

        Raises:
            CommandError: psql exited non-zero
            CommandTimeout: psql didn't finish in time
        """
        args = self._psql_base() + [
            "-d", dbname, "-X", "-q", "-t", "-A", "-v", "ON_ERROR_STOP=1",
        ]
        for key, value in (variables or {}).items():
            args += ["-v", f"{key}={value}"]

        env = None
        if self.superuser_password and not self.via_sudo:
            env = {"PGPASSWORD": self.superuser_password}

        result = self.runner.run(args, input=sql, env=env)
        return result.stdout.strip()

    # -- catalog queries ----------------------------------------------------

    def role_exists(self, role: str) -> bool:
        out = self.execute("SELECT 1 FROM pg_roles WHERE rolname = :'role';\n", {"role": role})
        return out == "1"

    def database_exists(self, name: str) -> bool:
        out = self.execute("SELECT 1 FROM pg_database WHERE datname = :'name';\n", {"name": name})
        return out == "1"

    # -- idempotent setup ---------------------------------------------------

    def ensure_role(self, role: str, password: str) -> bool:
        """Create the login role, or reset its password if it exists.

        Returns:
            True if the role was created, False if it already existed.
        """
        variables = {"role": role, "password": password}
        if self.role_exists(role):
            logger.info("Role '%s' exists, resetting its password", role)
            self.execute("ALTER ROLE :\"role\" WITH LOGIN PASSWORD :'password';\n", variables)
            return False

        logger.info("Creating role '%s'", role)
        self.execute("CREATE ROLE :\"role\" WITH LOGIN PASSWORD :'password';\n", variables)
        return True

    def ensure_database(self, name: str, owner: str) -> bool:
        """Create the database owned by ``owner`` unless it exists.

        Returns:
            True if the database was created, False if it already existed.
        """
        if self.database_exists(name):
            logger.info("Database '%s' already exists", name)
            return False

        logger.info("Creating database '%s' owned by '%s'", name, owner)
        self.execute('CREATE DATABASE :"name" OWNER :"owner";\n', {"name": name, "owner": owner})
        return True

    def grant_all(self, name: str, role: str) -> None:
        """GRANT ALL on the database; repeating a grant is harmless."""
        self.execute(
            'GRANT ALL PRIVILEGES ON DATABASE :"name" TO :"role";\n',
            {"name": name, "role": role},
        )

    # -- application connectivity -----------------------------------------

    def test_connection(self, user: str, password: str, name: str, host: str | None = None, port: int | None = None) -> bool:
        """Connect as the application role and check for the marker reply."""
        args = [
            "psql", "-U", user,
            "-h", host or self.host,
            "-p", str(port or self.port),
            "-d", name, "-X", "-q", "-t", "-A",
            "-c", f"SELECT '{CONNECTED_MARKER}';",
        ]
        try:
            result = self.runner.run(args, env={"PGPASSWORD": password}, check=False)
        except CommandError as e:
            logger.warning("Connection test could not run: %s", e)
            return False

        connected = result.ok and result.stdout.strip() == CONNECTED_MARKER
        if not connected:
            logger.warning(
                "Connection test as '%s' to %s failed: %s",
                user, name, result.stderr.strip() or result.stdout.strip(),
            )
        return connected
