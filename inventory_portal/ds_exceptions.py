class InventoryError(Exception):
    pass


class InvalidInputError(InventoryError, ValueError):
    pass


class NotFoundError(InventoryError, IndexError):
    pass


class NonExistentItemIdError(NotFoundError):
    pass


class NonExistentCategoryIdError(NotFoundError):
    pass


class NonExistentRequestIdError(NotFoundError):
    pass


class NonExistentUserIdError(NotFoundError):
    pass


class InsufficientStockError(InventoryError, ValueError):
    def __init__(self, item_id: int, item_name: str, available: int, requested: int):
        self.item_id = item_id
        self.item_name = item_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for '{item_name}' (item {item_id}): "
            f"requested {requested}, only {available} available"
        )


class InvalidStateError(InventoryError):
    pass


class ForbiddenError(InventoryError):
    pass
