"""Lifecycle reconciler for Account resources.

Each pass consults the account predicates and performs at most one step:

1. Pending deletion: release the finalizer
2. BYOC without finalizer: add it and stop
3. Failed: nothing to do. Creating for too long: mark Failed
4. Ready, unclaimed, with a claim link: mark claimed
5. Unclaimed pool account without state: request a new cloud account
6. Creating with an outstanding create request: check its status once
7. Ready for initialization: tag the owner and move to Ready

The only memory between passes is the resource's persisted spec and status.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from botocore.exceptions import ClientError

from . import account_state
from .account_provisioning import (
    CREATE_STATUS_IN_PROGRESS,
    CREATE_STATUS_SUCCEEDED,
    AccountCreationError,
    AccountLimitExceededError,
    check_create_account_status,
    create_account,
    tag_account,
)
from .aws import log_aws_error
from .conditions import set_condition
from .config import CONTROLLER_ACCOUNT, OperatorSettings
from .finalizers import add_finalizer, remove_finalizer
from .models import Account, AccountConditionType, AccountState
from .reconciler import ReconcileResult, Reconciler

logger = logging.getLogger(__name__)

CREATION_POLL_SECONDS = 30
CREATION_RETRY_SECONDS = 60
ACCOUNT_LIMIT_REQUEUE_SECONDS = 3600

REASON_CREATION_TIMEOUT = "CreationTimeout"
REASON_MISSING_ACCOUNT_ID = "MissingAWSAccountID"
REASON_CLAIMED = "AccountClaimed"
REASON_CREATING = "AccountCreating"
REASON_READY = "AccountReady"


class AccountReconciler(Reconciler):
    """Drives pool accounts from creation to Ready and through claiming."""

    controller_name = CONTROLLER_ACCOUNT
    kind = "Account"

    def reconcile(  # type: ignore[override]
        self, resource: Account, settings: OperatorSettings
    ) -> ReconcileResult:
        account = resource
        context = self.log_context(account)

        if account_state.is_pending_deletion(account):
            if account_state.has_finalizer(account):
                logger.info("Account is pending deletion", extra=context)
                remove_finalizer(self._store, account)
            return ReconcileResult.done(account)

        if account_state.is_byoc(account) and not account_state.has_finalizer(account):
            add_finalizer(self._store, account)
            return ReconcileResult.done(account)

        if account_state.is_failed(account):
            logger.debug("Account is in Failed state", extra=context)
            return ReconcileResult.done(account)

        threshold = timedelta(seconds=settings.account_creation_timeout_seconds)
        if account_state.is_creating(account) and account_state.creation_stuck(account, threshold):
            logger.error("Account creation timed out", extra=context)
            self._transition(
                account,
                AccountState.FAILED,
                AccountConditionType.FAILED,
                REASON_CREATION_TIMEOUT,
                f"Creation pending for longer than {settings.account_creation_timeout_seconds}s",
            )
            return ReconcileResult.done(account)

        if account_state.is_ready_unclaimed_and_has_claim_link(account):
            logger.info(
                "Claiming account", extra={**context, "claim_link": account.spec.claim_link}
            )
            account.status.claimed = True
            account.status.conditions = set_condition(
                account.status.conditions,
                AccountConditionType.CLAIMED.value,
                True,
                REASON_CLAIMED,
                f"Account claimed by {account.spec.claim_link_namespace}/{account.spec.claim_link}",
            )
            self._store.update_status(account)
            return ReconcileResult.done(account)

        if account_state.is_ready(account):
            return ReconcileResult.done(account)

        if not account_state.is_byoc(account):
            if account_state.is_unclaimed_and_has_no_state(account):
                return self._create(account, settings)
            creating = account_state.is_unclaimed_and_is_creating(account)
            if creating and not account_state.has_account_id(account):
                return self._check_creation(account, settings)

        if account_state.ready_for_initialization(account):
            return self._initialize(account, settings)

        return ReconcileResult.done(account)

    def _organizations(self, settings: OperatorSettings) -> Any:
        return self.client_builder(settings).operator_clients().organizations

    def _transition(
        self,
        account: Account,
        state: AccountState,
        condition_type: AccountConditionType,
        reason: str,
        message: str,
    ) -> Account:
        account.status.state = state
        account.status.conditions = set_condition(
            account.status.conditions, condition_type.value, True, reason, message
        )
        logger.info(
            "Account state changed",
            extra={**self.log_context(account), "state": state.value, "reason": reason},
        )
        return self._store.update_status(account)  # type: ignore[return-value]

    def _record_creation_error(
        self, account: Account, error: AccountCreationError
    ) -> ReconcileResult:
        condition_type = (
            AccountConditionType.CREATION_ERROR
            if error.retryable
            else AccountConditionType.LIMIT_EXCEEDED
        )
        account.status.conditions = set_condition(
            account.status.conditions, condition_type.value, True, error.reason, str(error)
        )
        self._store.update_status(account)
        if not error.retryable:
            return ReconcileResult.after(account, ACCOUNT_LIMIT_REQUEUE_SECONDS)
        return ReconcileResult.after(account, CREATION_RETRY_SECONDS)

    def _create(self, account: Account, settings: OperatorSettings) -> ReconcileResult:
        email = settings.account_email(account.name)
        context = {**self.log_context(account), "email": email}

        if self._dry_run:
            logger.info("Not creating AWS account (dry run)", extra=context)
            return ReconcileResult.done(account)

        logger.info("Creating AWS account", extra=context)
        try:
            output = create_account(self._organizations(settings), account.name, email)
        except AccountCreationError as e:
            logger.error(str(e), extra={**context, "reason": e.reason})
            return self._record_creation_error(account, e)

        return self._apply_create_status(account, output.get("CreateAccountStatus", {}))

    def _check_creation(self, account: Account, settings: OperatorSettings) -> ReconcileResult:
        request_id = account.status.create_account_request_id
        if not request_id:
            logger.warning(
                "Account is Creating without a create request id", extra=self.log_context(account)
            )
            return ReconcileResult.after(account, CREATION_POLL_SECONDS)

        try:
            output = check_create_account_status(self._organizations(settings), request_id)
        except AccountCreationError as e:
            logger.error(str(e), extra={**self.log_context(account), "reason": e.reason})
            if isinstance(e, AccountLimitExceededError):
                # The request is finished; the next attempt issues a fresh create
                account.status.state = None
                account.status.create_account_request_id = ""
                return self._record_creation_error(account, e)
            self._transition(
                account, AccountState.FAILED, AccountConditionType.FAILED, e.reason, str(e)
            )
            return ReconcileResult.done(account)
        except ClientError as e:
            log_aws_error(
                logger,
                "Failed to describe account creation status",
                e,
                create_account_request_id=request_id,
                **self.log_context(account),
            )
            raise

        return self._apply_create_status(account, output.get("CreateAccountStatus", {}))

    def _apply_create_status(self, account: Account, status: dict[str, Any]) -> ReconcileResult:
        state = status.get("State")
        if state == CREATE_STATUS_SUCCEEDED:
            account.spec.aws_account_id = status["AccountId"]
            account = self._store.update(account)  # type: ignore[assignment]
            logger.info(
                "AWS account created",
                extra={**self.log_context(account), "aws_account_id": account.spec.aws_account_id},
            )
        elif state == CREATE_STATUS_IN_PROGRESS:
            account.status.create_account_request_id = status.get("Id", "")

        if not account_state.is_creating(account):
            self._transition(
                account,
                AccountState.CREATING,
                AccountConditionType.CREATING,
                REASON_CREATING,
                "AWS account is being created",
            )
        elif state == CREATE_STATUS_IN_PROGRESS:
            self._store.update_status(account)

        if state == CREATE_STATUS_SUCCEEDED:
            return ReconcileResult.again(account)
        return ReconcileResult.after(account, CREATION_POLL_SECONDS)

    def _initialize(self, account: Account, settings: OperatorSettings) -> ReconcileResult:
        context = self.log_context(account)

        if account_state.is_byoc(account) and not account_state.has_account_id(account):
            logger.error("BYOC account has no AWS account id", extra=context)
            self._transition(
                account,
                AccountState.FAILED,
                AccountConditionType.FAILED,
                REASON_MISSING_ACCOUNT_ID,
                "BYOC account requires an awsAccountID",
            )
            return ReconcileResult.done(account)

        if not account_state.is_byoc(account) and settings.shard_name:
            try:
                tag_account(
                    self._organizations(settings),
                    account.spec.aws_account_id,
                    settings.shard_name,
                )
            except ClientError as e:
                log_aws_error(logger, "Unable to tag account owner", e, **context)
                raise

        self._transition(
            account,
            AccountState.READY,
            AccountConditionType.READY,
            REASON_READY,
            "Account is ready",
        )
        return ReconcileResult.done(account)
