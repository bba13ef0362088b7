"""
Users: registration, lookup by email and address book.
"""
from typing import Optional

from database import SERVER_TIMESTAMP, ArrayUnion
from errors import BusinessValidationError, NotFoundError
from logger import get_logger
from repository import Repository, decode
from schemas import Address, User

logger = get_logger("users")


class UserService:
    def __init__(self, store):
        self.store = store
        self.repo = Repository(store)

    def get_user(self, user_id: str) -> Optional[User]:
        return self.repo.get_by_id("user", user_id)

    def get_by_email(self, email: str) -> Optional[User]:
        users = self.repo.query("user", [("email", "==", email)], limit=1)
        return users[0] if users else None

    def register_user(self, user: User) -> str:
        # Uniqueness by pre-query; two concurrent registrations can both pass
        if self.get_by_email(user.email) is not None:
            raise BusinessValidationError("Email already registered")
        user_id = self.repo.add("user", user)
        logger.info("Registered user %s", user_id)
        return user_id

    def add_address(self, user_id: str, address: Address) -> None:
        """
        Append an address. A new default address clears the default flag on
        every other address in the same transaction.
        """
        try:
            if self.store.get("user", user_id) is None:
                raise NotFoundError("user", user_id)

            if not address.is_default:
                self.store.update("user", user_id, {
                    "address": ArrayUnion([address.model_dump()]),
                    "updated_at": SERVER_TIMESTAMP,
                })
                return

            def body(tx):
                user = decode("user", tx.get("user", user_id))
                if user is None:
                    raise NotFoundError("user", user_id)
                addresses = [a.model_copy(update={"is_default": False}).model_dump() for a in user.address]
                addresses.append(address.model_dump())
                tx.update("user", user_id, {"address": addresses, "updated_at": SERVER_TIMESTAMP})

            self.store.run_transaction(body)
        except Exception as e:
            logger.error("Error adding address for user %s: %s", user_id, e)
            raise
