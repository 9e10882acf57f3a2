from __future__ import annotations

import asyncio
import contextlib
import logging
import textwrap
import time
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Any

import anyio

from telegram import (
    BotCommand,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    ReplyKeyboardMarkup,
    Update,
)
from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError
from telegram.ext import (
    AIORateLimiter,
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from ..config import LOG_FILE_NAME, Settings, get_settings
from ..schemas.journal import (
    JournalSettings,
    TransactionKind,
    TransactionRecord,
    TransactionStatus,
)
from ..services.confirmation import (
    CANCEL_CALLBACK_PREFIX,
    CONFIRM_CALLBACK_PREFIX,
    ConfirmationAction,
    ConfirmationCodec,
    ConfirmationExpired,
    PendingConfirmation,
)
from ..services.journal import TransactionJournal
from ..services.provider import PaymentApiClient
from ..services.wizard import (
    AmountLimits,
    ConversationKey,
    InvalidInputPolicy,
    NoActiveSession,
    StepPrompt,
    ValidationFailed,
    WizardFinalized,
    WizardKind,
    WizardStateMachine,
    parse_amount,
)
from .helpers import (
    bot_data,
    compute_fee,
    escape_markdown,
    format_percentage,
    format_rupiah,
    format_timestamp,
    format_uptime,
    parse_percentage,
    status_emoji,
)

logger = logging.getLogger(__name__)

ALLOWED_UPDATES = ["message", "callback_query"]
STATUS_CALLBACK_PREFIX = "st:"
MESSAGE_CHUNK_LIMIT = 4000
RECENT_STATUS_LIMIT = 5
HISTORY_LIMIT = 10
RECENT_LOG_LINES = 20
MAX_LOG_LINES = 200
DEPOSIT_NOTE = "Awaiting manual verification"

UNAUTHORIZED_TEXT = "❌ You are not allowed to use this bot."
GENERIC_ERROR_TEXT = "⚠️ Something went wrong while handling that request. Please try again."

BUTTON_BANK_LIST = "🏦 Bank List"
BUTTON_CHECK_ACCOUNT = "🔍 Check Account"
BUTTON_CREATE_TRANSFER = "💸 Create Transfer"
BUTTON_CHECK_STATUS = "📊 Check Status"
BUTTON_DEPOSIT = "💰 Deposit"
BUTTON_HISTORY = "📜 History"
BUTTON_SETTINGS = "⚙️ Settings"
BUTTON_HELP = "❓ Help"

MAIN_KEYBOARD = ReplyKeyboardMarkup(
    [
        [BUTTON_BANK_LIST, BUTTON_CHECK_ACCOUNT],
        [BUTTON_CREATE_TRANSFER, BUTTON_CHECK_STATUS],
        [BUTTON_DEPOSIT, BUTTON_HISTORY],
        [BUTTON_SETTINGS, BUTTON_HELP],
    ],
    resize_keyboard=True,
)

WELCOME_TEXT = textwrap.dedent(
    """
    👋 Hi {name}!

    This bot sends bank and e-wallet payouts through the payment provider
    and keeps a journal of every transfer and deposit.

    Use the keyboard below or /help to see every command.
    """
).strip()

HELP_TEXT = textwrap.dedent(
    """
    *Payouts*
    /banklist - banks and e-wallets you can pay out to
    /checkaccount - verify a destination account
    /createtransfer - send a transfer (asks for confirmation)
    /checkstatus - latest transfers, /checkstatus <id> refreshes one

    *Deposits*
    /deposit - record a deposit awaiting manual verification
    /setstatus <id> <pending|success|failed> - update a record by hand

    *Journal*
    /history - your last transfers and deposits
    /stats - counters, success rate and uptime
    /backup - write a journal backup now
    /logs <lines> - latest lines of the log file (20 by default)

    *Settings*
    /settings - limits and deposit fee
    /setmindeposit <amount>, /setmaxdeposit <amount>, /setfee <percent>

    /cancel stops the wizard you are in.
    """
).strip()

WIZARD_TITLES = {
    WizardKind.CHECK_ACCOUNT: "🔍 *Check account*",
    WizardKind.CREATE_TRANSFER: "💸 *Create transfer*",
    WizardKind.CREATE_DEPOSIT: "💰 *Deposit*",
}


BOT_COMMANDS = [
    BotCommand("start", "Show the main menu"),
    BotCommand("help", "List bot commands"),
    BotCommand("banklist", "List banks and e-wallets"),
    BotCommand("checkaccount", "Verify a destination account"),
    BotCommand("createtransfer", "Send a transfer"),
    BotCommand("checkstatus", "Check transfer status"),
    BotCommand("deposit", "Record a deposit"),
    BotCommand("history", "Show recent transactions"),
    BotCommand("settings", "Show settings"),
    BotCommand("stats", "Show bot statistics"),
    BotCommand("backup", "Back up the journal"),
    BotCommand("logs", "Show recent log lines"),
    BotCommand("cancel", "Cancel the current wizard"),
]


_application: Application | None = None
_api_client: PaymentApiClient | None = None
_journal: TransactionJournal | None = None
_background_tasks: list[asyncio.Task] = []
_polling = False
_lock = asyncio.Lock()


def _effective_user(update: Update) -> Any:
    user = getattr(update, "effective_user", None)
    if user is None:
        query = getattr(update, "callback_query", None)
        user = getattr(query, "from_user", None)
    return user


def _conversation_key(update: Update) -> ConversationKey:
    user = _effective_user(update)
    chat = getattr(update, "effective_chat", None)
    chat_id = chat.id if chat is not None else user.id
    return (user.id, chat_id)


async def _ensure_owner(update: Update, context: ContextTypes.DEFAULT_TYPE) -> bool:
    user = _effective_user(update)
    owner_id = bot_data(context)["settings"].owner_telegram_id
    if user is not None and user.id == owner_id:
        return True
    logger.warning(
        "Unauthorized access attempt by %s",
        getattr(user, "id", "unknown"),
        extra={"user_id": getattr(user, "id", None)},
    )
    query = getattr(update, "callback_query", None)
    if query is not None:
        await query.answer(UNAUTHORIZED_TEXT, show_alert=True)
    elif getattr(update, "message", None) is not None:
        await update.message.reply_text(UNAUTHORIZED_TEXT)
    return False


def _is_message_not_modified_error(error: Exception) -> bool:
    return isinstance(error, BadRequest) and "message is not modified" in str(error).lower()


async def _safe_edit(query: Any, text: str, **kwargs: Any) -> None:
    try:
        await query.edit_message_text(text, **kwargs)
    except BadRequest as exc:
        if not _is_message_not_modified_error(exc):
            raise


def _split_message(text: str, limit: int = MESSAGE_CHUNK_LIMIT) -> list[str]:
    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for line in text.splitlines():
        if current and size + len(line) + 1 > limit:
            chunks.append("\n".join(current))
            current, size = [], 0
        current.append(line)
        size += len(line) + 1
    if current:
        chunks.append("\n".join(current))
    return chunks or [""]


def _amount_limits_for(journal: TransactionJournal) -> Callable[[WizardKind], AmountLimits]:
    def _limits(kind: WizardKind) -> AmountLimits:
        settings = journal.settings
        if kind is WizardKind.CREATE_DEPOSIT:
            return AmountLimits(settings.min_deposit, settings.max_deposit)
        return AmountLimits(settings.min_transfer, settings.max_transfer)

    return _limits


def _confirmation_keyboard(body: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("✅ Confirm", callback_data=f"{CONFIRM_CALLBACK_PREFIX}{body}"),
                InlineKeyboardButton("❌ Cancel", callback_data=f"{CANCEL_CALLBACK_PREFIX}{body}"),
            ]
        ]
    )


def _format_record_line(record: TransactionRecord) -> str:
    icon = "💸" if record.kind is TransactionKind.TRANSFER else "💰"
    return (
        f"{status_emoji(record.status)} {icon} {escape_markdown(record.reference_id)} "
        f"{format_rupiah(record.effective_total)} · {format_timestamp(record.created_at)}"
    )


def _format_record_detail(record: TransactionRecord, *, title: str) -> str:
    lines = [title, ""]
    lines.append(f"ID: {escape_markdown(record.id)}")
    lines.append(f"Ref: {escape_markdown(record.reference_id)}")
    if record.kind is TransactionKind.TRANSFER:
        lines.append(f"Bank: {escape_markdown((record.bank_code or '-').upper())}")
        lines.append(f"Account: {escape_markdown(record.account_number or '-')}")
        if record.account_name:
            lines.append(f"Name: {escape_markdown(record.account_name)}")
    elif record.method:
        lines.append(f"Method: {escape_markdown(record.method)}")
    lines.append(f"Amount: {format_rupiah(record.amount)}")
    lines.append(f"Fee: {format_rupiah(record.fee)}")
    lines.append(f"Total: {format_rupiah(record.effective_total)}")
    lines.append(f"Status: {status_emoji(record.status)} {record.status.value}")
    if record.note:
        lines.append(f"Note: {escape_markdown(record.note)}")
    lines.append(f"Updated: {format_timestamp(record.updated_at)}")
    return "\n".join(lines)


async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    user = update.effective_user
    journal: TransactionJournal = bot_data(context)["journal"]
    await journal.upsert_user(
        user.id,
        username=getattr(user, "username", None),
        first_name=getattr(user, "first_name", None),
        last_name=getattr(user, "last_name", None),
        language_code=getattr(user, "language_code", None),
    )
    name = getattr(user, "first_name", None) or "there"
    await update.message.reply_text(
        WELCOME_TEXT.format(name=escape_markdown(name)),
        parse_mode=ParseMode.MARKDOWN,
        reply_markup=MAIN_KEYBOARD,
    )


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    await update.message.reply_text(HELP_TEXT, parse_mode=ParseMode.MARKDOWN, reply_markup=MAIN_KEYBOARD)


async def banklist(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    api_client: PaymentApiClient = bot_data(context)["api_client"]
    loading = await update.message.reply_text("🔄 Loading the bank list...")
    result = await api_client.list_channels()
    if not result.success:
        await loading.edit_text(f"❌ Failed to load the bank list: {result.message}")
        return
    if not result.data:
        await loading.edit_text("No banks or e-wallets are available right now.")
        return

    grouped: dict[str, list] = defaultdict(list)
    for channel in result.data:
        grouped[(channel.type or "bank").lower()].append(channel)

    lines = [f"🏦 *Available channels* ({len(result.data)})"]
    for channel_type in sorted(grouped):
        lines.append("")
        lines.append(f"*{escape_markdown(channel_type.upper())}*")
        for channel in sorted(grouped[channel_type], key=lambda item: item.bank_name.lower()):
            lines.append(f"• `{channel.bank_code}` {escape_markdown(channel.bank_name)}")

    chunks = _split_message("\n".join(lines))
    await loading.edit_text(chunks[0], parse_mode=ParseMode.MARKDOWN)
    for chunk in chunks[1:]:
        await update.message.reply_text(chunk, parse_mode=ParseMode.MARKDOWN)


async def _start_wizard(
    update: Update, context: ContextTypes.DEFAULT_TYPE, kind: WizardKind
) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    wizard: WizardStateMachine = bot_data(context)["wizard"]
    prompt = wizard.start(_conversation_key(update), kind)
    await update.message.reply_text(
        f"{WIZARD_TITLES[kind]}\n\n{prompt}\n\nSend /cancel to stop.",
        parse_mode=ParseMode.MARKDOWN,
    )


async def checkaccount(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _start_wizard(update, context, WizardKind.CHECK_ACCOUNT)


async def createtransfer(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _start_wizard(update, context, WizardKind.CREATE_TRANSFER)


async def deposit(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _start_wizard(update, context, WizardKind.CREATE_DEPOSIT)


async def cancel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    wizard: WizardStateMachine = bot_data(context)["wizard"]
    if wizard.cancel(_conversation_key(update)):
        await update.message.reply_text("❌ Wizard cancelled.", reply_markup=MAIN_KEYBOARD)
    else:
        await update.message.reply_text("Nothing to cancel.", reply_markup=MAIN_KEYBOARD)


async def free_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.message
    if not message or not await _ensure_owner(update, context):
        return
    text = (message.text or "").strip()

    action = KEYBOARD_ACTIONS.get(text)
    if action is not None:
        setattr(context, "args", [])
        await action(update, context)
        return

    wizard: WizardStateMachine = bot_data(context)["wizard"]
    try:
        result = wizard.submit(_conversation_key(update), text)
    except NoActiveSession:
        await message.reply_text(
            "Use the menu buttons or /help to see what I can do.",
            reply_markup=MAIN_KEYBOARD,
        )
        return

    if isinstance(result, ValidationFailed):
        if result.aborted:
            suffix = "The wizard was cancelled, start it again from the menu."
        else:
            suffix = "Please try again."
        await message.reply_text(f"❌ {result.message}\n\n{suffix}")
        return
    if isinstance(result, StepPrompt):
        await message.reply_text(result.prompt, parse_mode=ParseMode.MARKDOWN)
        return
    await _finalize_wizard(update, context, result)


async def _finalize_wizard(
    update: Update, context: ContextTypes.DEFAULT_TYPE, result: WizardFinalized
) -> None:
    if result.kind is WizardKind.CHECK_ACCOUNT:
        await _run_account_check(update, context, result.fields)
    elif result.kind is WizardKind.CREATE_TRANSFER:
        await _ask_transfer_confirmation(update, context, result)
    else:
        await _ask_deposit_confirmation(update, context, result)


async def _run_account_check(
    update: Update, context: ContextTypes.DEFAULT_TYPE, fields: dict[str, Any]
) -> None:
    api_client: PaymentApiClient = bot_data(context)["api_client"]
    loading = await update.message.reply_text("🔍 Checking the account...")
    result = await api_client.check_account(fields["bank_code"], fields["account_number"])
    if not result.success:
        await loading.edit_text(f"❌ Account check failed: {result.message}")
        return
    check = result.data
    text = (
        "✅ *Account verified*\n\n"
        f"Bank: {escape_markdown(fields['bank_code'].upper())}\n"
        f"Account: {escape_markdown(fields['account_number'])}\n"
        f"Name: *{escape_markdown(check.nama_pemilik or '-')}*\n"
        f"Status: {escape_markdown(check.status or '-')}"
    )
    await loading.edit_text(text, parse_mode=ParseMode.MARKDOWN)


async def _ask_transfer_confirmation(
    update: Update, context: ContextTypes.DEFAULT_TYPE, result: WizardFinalized
) -> None:
    codec: ConfirmationCodec = bot_data(context)["confirmations"]
    fields = result.fields
    body = codec.encode(
        PendingConfirmation(
            action=ConfirmationAction.TRANSFER,
            reference_id=result.reference_id,
            fields=fields,
        )
    )
    text = (
        "💸 *Confirm transfer*\n\n"
        f"Ref: {escape_markdown(result.reference_id)}\n"
        f"Bank: {escape_markdown(fields['bank_code'].upper())}\n"
        f"Account: {escape_markdown(fields['account_number'])}\n"
        f"Name: {escape_markdown(fields['account_name'])}\n"
        f"Amount: {format_rupiah(fields['amount'])}\n\n"
        "The provider fee is added when the transfer is created."
    )
    await update.message.reply_text(
        text, parse_mode=ParseMode.MARKDOWN, reply_markup=_confirmation_keyboard(body)
    )


async def _ask_deposit_confirmation(
    update: Update, context: ContextTypes.DEFAULT_TYPE, result: WizardFinalized
) -> None:
    data = bot_data(context)
    codec: ConfirmationCodec = data["confirmations"]
    journal: TransactionJournal = data["journal"]
    amount = int(result.fields["amount"])
    fee_percentage = journal.settings.fee_percentage
    fee = compute_fee(amount, fee_percentage)
    body = codec.encode(
        PendingConfirmation(
            action=ConfirmationAction.DEPOSIT,
            reference_id=result.reference_id,
            fields={"amount": amount, "fee": fee},
        )
    )
    text = (
        "💰 *Confirm deposit*\n\n"
        f"Ref: {escape_markdown(result.reference_id)}\n"
        f"Amount: {format_rupiah(amount)}\n"
        f"Fee ({format_percentage(fee_percentage)}): {format_rupiah(fee)}\n"
        f"Total: *{format_rupiah(amount + fee)}*"
    )
    await update.message.reply_text(
        text, parse_mode=ParseMode.MARKDOWN, reply_markup=_confirmation_keyboard(body)
    )


async def callback_router(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if not query:
        return
    if not await _ensure_owner(update, context):
        return
    data = query.data or ""
    if data.startswith(CONFIRM_CALLBACK_PREFIX):
        await _handle_confirm(update, context, data[len(CONFIRM_CALLBACK_PREFIX):])
    elif data.startswith(CANCEL_CALLBACK_PREFIX):
        codec: ConfirmationCodec = bot_data(context)["confirmations"]
        codec.discard(data[len(CANCEL_CALLBACK_PREFIX):])
        await query.answer("Cancelled")
        await _safe_edit(query, "❌ Action cancelled.")
    elif data.startswith(STATUS_CALLBACK_PREFIX):
        await query.answer("Refreshing...")
        text = await _poll_status(context, data[len(STATUS_CALLBACK_PREFIX):])
        await _safe_edit(query, text, parse_mode=ParseMode.MARKDOWN)
    else:
        await query.answer()


async def _handle_confirm(update: Update, context: ContextTypes.DEFAULT_TYPE, body: str) -> None:
    query = update.callback_query
    codec: ConfirmationCodec = bot_data(context)["confirmations"]
    try:
        pending = codec.decode(body)
    except ConfirmationExpired:
        await query.answer("This confirmation has expired.", show_alert=True)
        await _safe_edit(query, "⌛ This confirmation has expired. Start the wizard again.")
        return
    except ValueError:
        logger.warning("Rejected malformed confirmation payload %r", body)
        await query.answer("Invalid confirmation.", show_alert=True)
        await _safe_edit(query, "❌ Invalid confirmation data.")
        return

    user_id = _effective_user(update).id
    if pending.action is ConfirmationAction.TRANSFER:
        await _execute_transfer(query, context, pending, user_id)
    else:
        await _execute_deposit(query, context, pending, user_id)


async def _execute_transfer(
    query: Any,
    context: ContextTypes.DEFAULT_TYPE,
    pending: PendingConfirmation,
    user_id: int,
) -> None:
    data = bot_data(context)
    api_client: PaymentApiClient = data["api_client"]
    journal: TransactionJournal = data["journal"]
    await query.answer("Processing transfer...")
    await _safe_edit(query, "🔄 Processing transfer...")

    fields = {**pending.fields, "reference_id": pending.reference_id}
    result = await api_client.create_transfer(fields)
    if not result.success:
        await _safe_edit(query, f"❌ Transfer failed: {result.message}")
        return

    transfer = result.data
    record_fields: dict[str, Any] = {
        "reference_id": pending.reference_id,
        "user_id": user_id,
        "kind": TransactionKind.TRANSFER,
        "bank_code": fields["bank_code"],
        "account_number": fields["account_number"],
        "account_name": fields.get("account_name"),
        "amount": transfer.nominal or int(fields["amount"]),
        "fee": transfer.fee or 0,
        "total": transfer.total,
        "status": TransactionStatus.from_provider(transfer.status),
        "metadata": {
            "provider_id": transfer.id,
            "provider_status": transfer.status,
            "provider_bank_code": transfer.bank_code,
            "provider_created_at": transfer.created_at,
        },
    }
    if transfer.id:
        record_fields["id"] = transfer.id
    record = await journal.append(TransactionRecord(**record_fields))
    logger.info(
        "Transfer %s confirmed by %s",
        record.reference_id,
        user_id,
        extra={"reference_id": record.reference_id, "status": record.status.value},
    )
    text = _format_record_detail(record, title="✅ *Transfer submitted*")
    await _safe_edit(
        query,
        f"{text}\n\nUse /checkstatus to follow it.",
        parse_mode=ParseMode.MARKDOWN,
    )


async def _execute_deposit(
    query: Any,
    context: ContextTypes.DEFAULT_TYPE,
    pending: PendingConfirmation,
    user_id: int,
) -> None:
    journal: TransactionJournal = bot_data(context)["journal"]
    await query.answer("Recording deposit...")
    amount = int(pending.fields["amount"])
    fee = pending.fields.get("fee")
    if fee is None:
        fee = compute_fee(amount, journal.settings.fee_percentage)
    record = await journal.append(
        TransactionRecord(
            reference_id=pending.reference_id,
            user_id=user_id,
            kind=TransactionKind.DEPOSIT,
            amount=amount,
            fee=int(fee),
            total=amount + int(fee),
            status=TransactionStatus.PENDING,
            method="manual",
            note=DEPOSIT_NOTE,
        )
    )
    text = _format_record_detail(record, title="💰 *Deposit recorded*")
    await _safe_edit(
        query,
        f"{text}\n\nMark it verified with /setstatus {escape_markdown(record.reference_id)} success",
        parse_mode=ParseMode.MARKDOWN,
    )


async def _poll_status(context: ContextTypes.DEFAULT_TYPE, identifier: str) -> str:
    data = bot_data(context)
    api_client: PaymentApiClient = data["api_client"]
    journal: TransactionJournal = data["journal"]

    record = journal.find(identifier)
    if record is not None and record.kind is TransactionKind.DEPOSIT:
        return _format_record_detail(record, title="💰 *Deposit status*")

    provider_id = identifier
    if record is not None:
        provider_id = record.metadata.get("provider_id") or record.id
    result = await api_client.check_status(provider_id)
    if not result.success:
        return f"❌ Could not fetch the status of {escape_markdown(identifier)}: {escape_markdown(result.message)}"

    transfer = result.data
    status = TransactionStatus.from_provider(transfer.status)
    updated = await journal.update_status(
        record.id if record is not None else provider_id,
        status,
        metadata={"provider_status": transfer.status},
    )
    if updated is not None:
        return _format_record_detail(updated, title="📊 *Transfer status*")

    lines = [
        "📊 *Transfer status*",
        "",
        f"ID: {escape_markdown(transfer.id or provider_id)}",
        f"Ref: {escape_markdown(transfer.reff_id or '-')}",
        f"Name: {escape_markdown(transfer.name or '-')}",
        f"Destination: {escape_markdown(transfer.nomor_tujuan or '-')}",
        f"Amount: {format_rupiah(transfer.nominal or 0)}",
        f"Fee: {format_rupiah(transfer.fee or 0)}",
        f"Total: {format_rupiah(transfer.total or 0)}",
        f"Status: {status_emoji(status)} {escape_markdown(transfer.status or status.value)}",
    ]
    return "\n".join(lines)


async def checkstatus(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    args = list(getattr(context, "args", []) or [])
    journal: TransactionJournal = bot_data(context)["journal"]

    if not args:
        records = journal.list_for_user(
            update.effective_user.id, limit=RECENT_STATUS_LIMIT, kind=TransactionKind.TRANSFER
        )
        if not records:
            await update.message.reply_text(
                "No transfers yet. Use /checkstatus <id> to look up a provider transfer."
            )
            return
        lines = ["📊 *Latest transfers*", ""]
        lines.extend(_format_record_line(record) for record in records)
        lines.append("")
        lines.append("Tap a button to refresh its status.")
        keyboard = InlineKeyboardMarkup(
            [
                [
                    InlineKeyboardButton(
                        f"🔄 {record.reference_id}",
                        callback_data=f"{STATUS_CALLBACK_PREFIX}{record.id}",
                    )
                ]
                for record in records
            ]
        )
        await update.message.reply_text(
            "\n".join(lines), parse_mode=ParseMode.MARKDOWN, reply_markup=keyboard
        )
        return

    loading = await update.message.reply_text("🔄 Checking the status...")
    text = await _poll_status(context, args[0])
    await loading.edit_text(text, parse_mode=ParseMode.MARKDOWN)


async def history(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    journal: TransactionJournal = bot_data(context)["journal"]
    records = journal.list_for_user(update.effective_user.id, limit=HISTORY_LIMIT)
    if not records:
        await update.message.reply_text("📜 No transactions yet.")
        return

    successful_transfers = sum(
        record.amount
        for record in records
        if record.kind is TransactionKind.TRANSFER and record.status is TransactionStatus.SUCCESS
    )
    successful_deposits = sum(
        record.amount
        for record in records
        if record.kind is TransactionKind.DEPOSIT and record.status is TransactionStatus.SUCCESS
    )
    lines = [f"📜 *Last {len(records)} transactions*", ""]
    lines.extend(_format_record_line(record) for record in records)
    lines.append("")
    lines.append(f"Successful transfers: {format_rupiah(successful_transfers)}")
    lines.append(f"Successful deposits: {format_rupiah(successful_deposits)}")
    await update.message.reply_text("\n".join(lines), parse_mode=ParseMode.MARKDOWN)


async def settings_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    journal: TransactionJournal = bot_data(context)["journal"]
    current = journal.settings
    stats = journal.stats()
    text = (
        "⚙️ *Settings*\n\n"
        f"Min deposit: {format_rupiah(current.min_deposit)}\n"
        f"Max deposit: {format_rupiah(current.max_deposit)}\n"
        f"Min transfer: {format_rupiah(current.min_transfer)}\n"
        f"Max transfer: {format_rupiah(current.max_transfer)}\n"
        f"Deposit fee: {format_percentage(current.fee_percentage)}\n"
        f"Owner notifications: {'on' if current.notification_enabled else 'off'}\n\n"
        f"Provider requests: {stats.total_requests} ({stats.failed_requests} failed)\n"
        f"Last backup: {format_timestamp(stats.last_backup)}\n\n"
        "Change limits with /setmindeposit, /setmaxdeposit or /setfee."
    )
    await update.message.reply_text(text, parse_mode=ParseMode.MARKDOWN)


async def _update_amount_setting(
    update: Update, context: ContextTypes.DEFAULT_TYPE, field: str, command: str
) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    args = list(getattr(context, "args", []) or [])
    amount = parse_amount(args[0]) if args else None
    if not amount:
        await update.message.reply_text(f"Usage: {command} <amount>, e.g. {command} 10000")
        return
    journal: TransactionJournal = bot_data(context)["journal"]
    try:
        await journal.update_settings(**{field: amount})
    except ValueError as exc:
        await update.message.reply_text(f"❌ {exc}")
        return
    label = field.replace("_", " ")
    await update.message.reply_text(f"✅ {label.capitalize()} set to {format_rupiah(amount)}.")


async def setmindeposit(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _update_amount_setting(update, context, "min_deposit", "/setmindeposit")


async def setmaxdeposit(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await _update_amount_setting(update, context, "max_deposit", "/setmaxdeposit")


async def setfee(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    args = list(getattr(context, "args", []) or [])
    if not args:
        await update.message.reply_text("Usage: /setfee <percent>, e.g. /setfee 2.5")
        return
    journal: TransactionJournal = bot_data(context)["journal"]
    try:
        fraction = parse_percentage(args[0])
        await journal.update_settings(fee_percentage=fraction)
    except ValueError as exc:
        await update.message.reply_text(f"❌ {exc}")
        return
    await update.message.reply_text(f"✅ Deposit fee set to {format_percentage(fraction)}.")


async def setstatus(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    args = list(getattr(context, "args", []) or [])
    choices = ", ".join(status.value for status in TransactionStatus)
    if len(args) < 2:
        await update.message.reply_text(f"Usage: /setstatus <id or ref> <{choices}>")
        return
    try:
        status = TransactionStatus(args[1].lower())
    except ValueError:
        await update.message.reply_text(f"Unknown status '{args[1]}'. Use one of: {choices}.")
        return
    journal: TransactionJournal = bot_data(context)["journal"]
    record = await journal.update_status(
        args[0], status, metadata={"manual_update_by": update.effective_user.id}
    )
    if record is None:
        await update.message.reply_text(f"❌ No transaction found for {args[0]}.")
        return
    await update.message.reply_text(
        _format_record_detail(record, title="✅ *Status updated*"),
        parse_mode=ParseMode.MARKDOWN,
    )


async def stats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    data = bot_data(context)
    journal: TransactionJournal = data["journal"]
    summary = journal.stats()
    uptime = time.monotonic() - data.get("started_at", time.monotonic())
    text = (
        "📊 *Bot statistics*\n\n"
        f"Users: {summary.total_users}\n"
        f"Transfers: {summary.total_transactions} ({summary.pending_transactions} pending)\n"
        f"Deposits: {summary.total_deposits} ({summary.pending_deposits} pending)\n"
        f"Successful transfers: {summary.successful_transfers}\n"
        f"Successful deposits: {summary.successful_deposits}\n"
        f"Total volume: {format_rupiah(summary.total_volume)}\n\n"
        f"Provider requests: {summary.total_requests} ({summary.failed_requests} failed)\n"
        f"Success rate: {summary.success_rate:.1f}%\n"
        f"Uptime: {format_uptime(uptime)}\n"
        f"Last startup: {format_timestamp(summary.last_startup)}\n"
        f"Last backup: {format_timestamp(summary.last_backup)}"
    )
    await update.message.reply_text(text, parse_mode=ParseMode.MARKDOWN)


async def backup(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    journal: TransactionJournal = bot_data(context)["journal"]
    target = await journal.create_backup()
    if target is None:
        await update.message.reply_text("❌ Backup failed, check the logs.")
        return
    kept = len(journal.list_backups())
    await update.message.reply_text(
        f"💾 Backup saved as {escape_markdown(target.name)} ({kept} kept).",
        parse_mode=ParseMode.MARKDOWN,
    )



def _tail_lines(path: Path, count: int) -> list[str]:
    with path.open(encoding="utf-8", errors="replace") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=count)]


async def logs(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not await _ensure_owner(update, context):
        return
    log_dir = getattr(bot_data(context)["settings"], "log_dir", None)
    if log_dir is None:
        await update.message.reply_text(
            "📭 Logging to file is disabled. Set LOG_DIR to keep a log file."
        )
        return

    count = RECENT_LOG_LINES
    if context.args:
        requested = parse_amount(context.args[0])
        if requested:
            count = min(requested, MAX_LOG_LINES)

    try:
        lines = await anyio.to_thread.run_sync(_tail_lines, Path(log_dir) / LOG_FILE_NAME, count)
    except FileNotFoundError:
        lines = []
    except OSError:
        logger.exception("Failed to read the log file in %s", log_dir)
        await update.message.reply_text("❌ Could not read the log file.")
        return
    lines = [line for line in lines if line.strip()]
    if not lines:
        await update.message.reply_text("📭 No log entries yet.")
        return

    body = "\n".join(escape_markdown(line) for line in lines)
    text = f"📋 *Last {len(lines)} log lines*\n\n{body}"
    for chunk in _split_message(text):
        await update.message.reply_text(chunk, parse_mode=ParseMode.MARKDOWN)


KEYBOARD_ACTIONS: dict[str, Callable[[Update, ContextTypes.DEFAULT_TYPE], Awaitable[None]]] = {
    BUTTON_BANK_LIST: banklist,
    BUTTON_CHECK_ACCOUNT: checkaccount,
    BUTTON_CREATE_TRANSFER: createtransfer,
    BUTTON_CHECK_STATUS: checkstatus,
    BUTTON_DEPOSIT: deposit,
    BUTTON_HISTORY: history,
    BUTTON_SETTINGS: settings_command,
    BUTTON_HELP: help_command,
}


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing an update", exc_info=context.error)
    if not isinstance(update, Update) or update.effective_message is None:
        return
    try:
        await update.effective_message.reply_text(GENERIC_ERROR_TEXT)
    except TelegramError:
        logger.warning("Could not deliver the error notice", exc_info=True)


async def _notify_owner(application: Application, text: str) -> None:
    data = application.bot_data
    journal: TransactionJournal = data["journal"]
    if journal.is_loaded and not journal.settings.notification_enabled:
        return
    try:
        await application.bot.send_message(
            chat_id=data["settings"].owner_telegram_id,
            text=text,
            parse_mode=ParseMode.MARKDOWN,
        )
    except TelegramError:
        logger.warning("Could not notify the owner", exc_info=True)


async def _sweep_expired(application: Application) -> None:
    data = application.bot_data
    settings: Settings = data["settings"]
    wizard: WizardStateMachine = data["wizard"]
    codec: ConfirmationCodec = data["confirmations"]
    wizard.sweep_expired(max_age=timedelta(seconds=settings.wizard_session_ttl_seconds))
    codec.sweep_expired()


async def _health_check(application: Application) -> None:
    data = application.bot_data
    api_client: PaymentApiClient = data["api_client"]
    journal: TransactionJournal = data["journal"]
    status = await api_client.test_connection()
    if not status.connected:
        logger.warning("Provider health check failed: %s", status.message)
    await journal.save()


async def _run_periodically(
    name: str, interval: float, job: Callable[[], Awaitable[None]]
) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await job()
        except Exception:
            logger.exception("Periodic task %s failed", name)


def _create_application(
    settings: Settings, api_client: PaymentApiClient, journal: TransactionJournal
) -> Application:
    application = (
        Application.builder()
        .token(settings.telegram_bot_token)
        .rate_limiter(AIORateLimiter())
        .build()
    )
    application.bot_data["settings"] = settings
    application.bot_data["api_client"] = api_client
    application.bot_data["journal"] = journal
    application.bot_data["wizard"] = WizardStateMachine(
        _amount_limits_for(journal),
        invalid_input_policy=InvalidInputPolicy(settings.wizard_invalid_input_policy),
        format_amount=format_rupiah,
    )
    application.bot_data["confirmations"] = ConfirmationCodec(
        max_age=timedelta(seconds=settings.wizard_session_ttl_seconds)
    )
    application.bot_data["started_at"] = time.monotonic()

    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("banklist", banklist))
    application.add_handler(CommandHandler("checkaccount", checkaccount))
    application.add_handler(CommandHandler("createtransfer", createtransfer))
    application.add_handler(CommandHandler("deposit", deposit))
    application.add_handler(CommandHandler("checkstatus", checkstatus))
    application.add_handler(CommandHandler("history", history))
    application.add_handler(CommandHandler("settings", settings_command))
    application.add_handler(CommandHandler("setmindeposit", setmindeposit))
    application.add_handler(CommandHandler("setmaxdeposit", setmaxdeposit))
    application.add_handler(CommandHandler("setfee", setfee))
    application.add_handler(CommandHandler("setstatus", setstatus))
    application.add_handler(CommandHandler("stats", stats))
    application.add_handler(CommandHandler("backup", backup))
    application.add_handler(CommandHandler("logs", logs))
    application.add_handler(CommandHandler("cancel", cancel))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, free_text))
    application.add_handler(
        CallbackQueryHandler(
            callback_router,
            pattern=f"^({CONFIRM_CALLBACK_PREFIX}|{CANCEL_CALLBACK_PREFIX}|{STATUS_CALLBACK_PREFIX})",
        )
    )
    application.add_error_handler(error_handler)
    return application


def _webhook_url(settings: Settings) -> str | None:
    if not settings.backend_base_url or not settings.telegram_webhook_secret:
        return None
    base_url = str(settings.backend_base_url)
    return base_url.rstrip("/") + f"/api/telegram/webhook/{settings.telegram_webhook_secret}"


def _build_journal(settings: Settings) -> TransactionJournal:
    return TransactionJournal(
        settings.journal_path,
        settings.backup_dir,
        backup_retention=settings.backup_retention,
        defaults=JournalSettings(
            min_deposit=settings.min_deposit,
            max_deposit=settings.max_deposit,
            min_transfer=settings.min_transfer,
            max_transfer=settings.max_transfer,
            fee_percentage=settings.fee_percentage,
        ),
    )


async def init_bot() -> None:
    """Load the journal, start the Telegram bot and its periodic tasks."""
    settings = get_settings()
    webhook_url = _webhook_url(settings)

    async with _lock:
        global _application, _api_client, _journal, _background_tasks, _polling
        if _application is not None:
            return

        journal = _build_journal(settings)
        await journal.load()
        api_client = PaymentApiClient(
            settings.provider_api_key,
            str(settings.provider_base_url),
            max_retries=settings.provider_max_retries,
            timeout=settings.provider_timeout_seconds,
            backoff_base=settings.provider_backoff_base_seconds,
            backoff_cap=settings.provider_backoff_cap_seconds,
            observer=lambda endpoint, ok: journal.record_request(ok),
        )
        application = _create_application(settings, api_client, journal)

        try:
            await application.initialize()
            try:
                await application.bot.set_my_commands(BOT_COMMANDS)
            except Exception:
                logger.exception("Failed to set Telegram command list.")
            if webhook_url is not None:
                if settings.telegram_register_webhook_on_start:
                    await application.bot.set_webhook(
                        url=webhook_url,
                        drop_pending_updates=False,
                        allowed_updates=ALLOWED_UPDATES,
                    )
                polling = False
            else:
                await application.updater.start_polling(
                    drop_pending_updates=True, allowed_updates=ALLOWED_UPDATES
                )
                polling = True
            await application.start()
        except Exception:
            logger.exception("Failed to start the Telegram bot; bot disabled for this run.")
            with contextlib.suppress(Exception):
                await application.stop()
            with contextlib.suppress(Exception):
                await application.shutdown()
            await api_client.aclose()
            await journal.save()
            return

        connection = await api_client.test_connection()
        tasks = [
            asyncio.create_task(
                _run_periodically(
                    "session-sweep",
                    settings.wizard_sweep_interval_seconds,
                    partial(_sweep_expired, application),
                )
            ),
            asyncio.create_task(
                _run_periodically(
                    "health-check",
                    settings.health_check_interval_seconds,
                    partial(_health_check, application),
                )
            ),
        ]

        _application = application
        _api_client = api_client
        _journal = journal
        _background_tasks = tasks
        _polling = polling
        if polling:
            logger.info("Telegram bot started in polling mode")
        else:
            logger.info("Telegram webhook configured at %s", webhook_url)

    marker = "✅" if connection.connected else "⚠️"
    await _notify_owner(
        application,
        f"🟢 *Bot started*\n\nProvider: {marker} {escape_markdown(connection.message)}",
    )


async def handle_update(payload: dict[str, Any]) -> None:
    """Process a Telegram update forwarded by FastAPI."""
    async with _lock:
        if _application is None:
            raise RuntimeError("Telegram bot is not initialised.")
        application = _application
    update = Update.de_json(payload, application.bot)
    await application.process_update(update)


async def shutdown_bot() -> None:
    """Stop timers, flush the journal and tear down the Telegram bot."""
    async with _lock:
        global _application, _api_client, _journal, _background_tasks, _polling
        if _application is None:
            return
        for task in _background_tasks:
            task.cancel()
        await asyncio.gather(*_background_tasks, return_exceptions=True)

        await _notify_owner(_application, "🔴 *Bot stopped*")
        if _polling and _application.updater is not None:
            await _application.updater.stop()
        await _application.stop()
        await _application.shutdown()
        if _journal is not None:
            await _journal.save()
        if _api_client is not None:
            await _api_client.aclose()
        _application = None
        _api_client = None
        _journal = None
        _background_tasks = []
        _polling = False


async def main() -> None:  # pragma: no cover - helper for local debugging
    """Run the bot without FastAPI until interrupted."""
    await init_bot()
    try:
        await asyncio.Event().wait()
    finally:
        await shutdown_bot()


if __name__ == "__main__":  # pragma: no cover
    asyncio.run(main())
