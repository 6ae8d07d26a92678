"""Create the first admin account from ADMIN_EMAIL / ADMIN_PASSWORD."""
import logging
import sys

from pymongo.errors import PyMongoError

import errors
from accounts import AccountDirectory
from config import Settings, configure_logging
from database import Database
from security import PasswordHasher, TokenSigner

logger = logging.getLogger("blood_donor.init_admin")


def main() -> int:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    if not settings.admin_email or not settings.admin_password:
        logger.error("ADMIN_EMAIL and ADMIN_PASSWORD must be set")
        return 1

    with Database.from_settings(settings) as database:
        accounts = AccountDirectory(
            database, PasswordHasher(settings.bcrypt_rounds), TokenSigner(settings.jwt_secret, settings.jwt_expire_minutes)
        )
        try:
            database.ensure_indexes()
            admin = accounts.ensure_admin(settings.admin_email, settings.admin_password)
        except (errors.AppError, PyMongoError) as exc:
            logger.error("could not create admin: %s", exc)
            return 1
    logger.info("admin ready email=%s", admin["email"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
