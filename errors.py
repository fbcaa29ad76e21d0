class LedgerError(Exception):
    pass


class NotFound(LedgerError, LookupError):
    pass


class AccountNotFound(NotFound):
    def __init__(self, account_id: int) -> None:
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class CreditCardNotFound(NotFound):
    def __init__(self, credit_card_id: int) -> None:
        self.credit_card_id = credit_card_id
        super().__init__(f"Credit card {credit_card_id} not found")


class TransactionNotFound(NotFound):
    def __init__(self, transaction_id: int) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class TransferNotFound(NotFound):
    def __init__(self, transfer_id: int) -> None:
        self.transfer_id = transfer_id
        super().__init__(f"Transfer {transfer_id} not found")


class MalformedData(LedgerError):
    """A single stored record that cannot be interpreted.

    Raised per record; callers folding a history skip the record and go on.
    """

    def __init__(self, record_id: object, reason: str) -> None:
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Record {record_id} is malformed: {reason}")


class StoreUnavailable(LedgerError):
    """The backing store could not be read (connection loss, timeout)."""


class HistoryTooLarge(LedgerError):
    def __init__(self, what: str, max_pages: int, page_size: int) -> None:
        super().__init__(
            f"{what} exceeds {max_pages} pages of {page_size} records; refusing to fold a partial history"
        )


class ValidationError(LedgerError, ValueError):
    pass
