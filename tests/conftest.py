"""
Pytest configuration and shared fixtures for service layer tests.

Services talk to the ledger through the `database` module and to the panel
through `app.services.vpn_client`. The fixtures below swap those module
functions for in-memory fakes that keep the same guarantees (conditional
updates, caps, idempotent inserts), so flows can run end to end without
PostgreSQL or a panel.
"""
import asyncio
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

os.environ.setdefault("APP_ENV", "local")

import pytest  # noqa: E402

import config  # noqa: E402
import database  # noqa: E402
from app.core.exceptions import (  # noqa: E402
    Conflict,
    InsufficientFunds,
    NotFound,
    RemoteConflict,
    RemoteServiceUnavailable,
)
from app.services import vpn_client  # noqa: E402
from app.services.notifications import service as notification_service  # noqa: E402
from app.services.vpn_client import RemoteSubscriber  # noqa: E402


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeLedger:
    """In-memory stand-in for the asyncpg-backed database module"""

    PATCHED = (
        "get_client",
        "get_client_balance",
        "set_client_remote_id",
        "mark_trial_used",
        "get_tariff",
        "get_proxy_tariff",
        "create_payment",
        "get_payment",
        "get_payment_by_external_id",
        "set_payment_external_id",
        "mark_payment_paid",
        "mark_payment_failed",
        "create_balance_payment",
        "claim_entitlement_apply",
        "release_entitlement_claim",
        "mark_entitlement_applied",
        "get_unapplied_paid_payments",
        "get_referral_credits",
        "record_referral_credits",
        "get_promo_group_by_code",
        "count_promo_group_activations",
        "has_promo_group_activation",
        "create_promo_group_activation",
        "get_promo_code_by_code",
        "count_promo_code_usages",
        "record_promo_code_usage",
        "get_proxy_nodes_for_tariff",
        "get_proxy_slots_by_payment",
        "create_proxy_slots",
        "get_auto_broadcast_rules",
        "get_auto_broadcast_rule",
        "get_auto_broadcast_candidates",
        "has_auto_broadcast_log",
        "insert_auto_broadcast_log",
        "get_system_config",
        "get_setting",
    )

    def __init__(self):
        self.clients: Dict[int, Dict[str, Any]] = {}
        self.tariffs: Dict[int, Dict[str, Any]] = {}
        self.proxy_tariffs: Dict[int, Dict[str, Any]] = {}
        self.proxy_nodes: List[Dict[str, Any]] = []
        self.proxy_slots: List[Dict[str, Any]] = []
        self.payments: Dict[int, Dict[str, Any]] = {}
        self.promo_groups: Dict[str, Dict[str, Any]] = {}
        self.promo_activations: List[Tuple[int, int]] = []
        self.promo_codes: Dict[str, Dict[str, Any]] = {}
        self.promo_code_usages: List[Dict[str, Any]] = []
        self.referral_credits: List[Dict[str, Any]] = []
        self.rules: Dict[int, Dict[str, Any]] = {}
        self.broadcast_candidates: Dict[int, List[int]] = {}
        self.broadcast_logs: set = set()
        self.settings: Dict[str, str] = {
            "default_referral_percent": "30",
            "referral_percent_level_2": "10",
            "referral_percent_level_3": "10",
            "service_name": "VPN",
        }
        self._ids: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _next_id(self, table: str) -> int:
        self._ids[table] = self._ids.get(table, 0) + 1
        return self._ids[table]

    # ---- seeding helpers (sync) -------------------------------------------------

    def add_client(self, client_id: Optional[int] = None, **fields) -> Dict[str, Any]:
        client_id = client_id or self._next_id("clients")
        self._ids["clients"] = max(self._ids.get("clients", 0), client_id)
        client = {
            "id": client_id,
            "email": None,
            "telegram_id": None,
            "telegram_username": None,
            "balance": Decimal("0"),
            "remote_subscriber_id": None,
            "trial_used": False,
            "referrer_id": None,
            "referral_percent": None,
            "is_blocked": False,
            "created_at": _now(),
        }
        client.update(fields)
        client["balance"] = Decimal(str(client["balance"]))
        self.clients[client_id] = client
        return dict(client)

    def add_tariff(self, **fields) -> Dict[str, Any]:
        tariff = {
            "id": self._next_id("tariffs"),
            "name": "Month",
            "duration_days": 30,
            "traffic_limit_bytes": 0,
            "device_limit": None,
            "internal_squad_uuids": [],
            "price": Decimal("100.00"),
            "currency": "RUB",
            "enabled": True,
        }
        tariff.update(fields)
        self.tariffs[tariff["id"]] = tariff
        return dict(tariff)

    def add_proxy_tariff(self, **fields) -> Dict[str, Any]:
        tariff = {
            "id": self._next_id("proxy_tariffs"),
            "name": "Proxy",
            "proxy_count": 2,
            "duration_days": 30,
            "traffic_limit_bytes": None,
            "connection_limit": None,
            "price": Decimal("50.00"),
            "currency": "RUB",
            "enabled": True,
        }
        tariff.update(fields)
        self.proxy_tariffs[tariff["id"]] = tariff
        return dict(tariff)

    def add_proxy_node(self, **fields) -> Dict[str, Any]:
        node = {
            "id": self._next_id("proxy_nodes"),
            "name": "node",
            "public_host": "proxy.example.com",
            "socks_port": 1080,
            "http_port": 8080,
            "capacity": None,
            "status": "ONLINE",
        }
        node.update(fields)
        self.proxy_nodes.append(node)
        return dict(node)

    def add_payment(self, **fields) -> Dict[str, Any]:
        payment = {
            "id": self._next_id("payments"),
            "client_id": None,
            "amount": Decimal("100.00"),
            "currency": "RUB",
            "status": database.PAYMENT_PENDING,
            "provider": "yookassa",
            "tariff_id": None,
            "proxy_tariff_id": None,
            "extra_option": None,
            "promo_code_id": None,
            "external_id": None,
            "metadata": None,
            "created_at": _now(),
            "paid_at": None,
            "entitlement_applied_at": None,
            "activation_claimed_at": None,
        }
        payment.update(fields)
        if payment["status"] == database.PAYMENT_PAID and payment["paid_at"] is None:
            payment["paid_at"] = _now()
        self.payments[payment["id"]] = payment
        return dict(payment)

    def add_promo_group(self, code: str, **fields) -> Dict[str, Any]:
        group = {
            "id": self._next_id("promo_groups"),
            "code": code,
            "name": code,
            "squad_uuid": None,
            "traffic_limit_bytes": 0,
            "device_limit": None,
            "duration_days": 7,
            "max_activations": 0,
            "is_active": True,
        }
        group.update(fields)
        self.promo_groups[code] = group
        return dict(group)

    def add_promo_code(self, code: str, **fields) -> Dict[str, Any]:
        promo = {
            "id": self._next_id("promo_codes"),
            "code": code,
            "name": code,
            "type": "FREE_DAYS",
            "discount_percent": None,
            "discount_fixed": None,
            "squad_uuid": None,
            "traffic_limit_bytes": 0,
            "device_limit": None,
            "duration_days": 7,
            "max_uses": 0,
            "max_uses_per_client": 1,
            "is_active": True,
            "expires_at": None,
        }
        promo.update(fields)
        self.promo_codes[code] = promo
        return dict(promo)

    def add_rule(self, **fields) -> Dict[str, Any]:
        rule = {
            "id": self._next_id("rules"),
            "name": "rule",
            "trigger_type": "after_registration",
            "delay_days": 0,
            "channel": "telegram",
            "subject": None,
            "message": "Hello",
            "enabled": True,
        }
        rule.update(fields)
        self.rules[rule["id"]] = rule
        return dict(rule)

    def balance(self, client_id: int) -> Decimal:
        return self.clients[client_id]["balance"]

    # ---- clients ----------------------------------------------------------------

    async def get_client(self, client_id, conn=None):
        client = self.clients.get(client_id)
        return dict(client) if client else None

    async def get_client_balance(self, client_id):
        client = self.clients.get(client_id)
        return client["balance"] if client else None

    async def set_client_remote_id(self, client_id, remote_id, expected_current=None):
        client = self.clients[client_id]
        if client["remote_subscriber_id"] in (expected_current, remote_id):
            client["remote_subscriber_id"] = remote_id
            return True
        return False

    async def mark_trial_used(self, client_id):
        client = self.clients[client_id]
        if client["trial_used"]:
            return False
        client["trial_used"] = True
        return True

    # ---- catalog ----------------------------------------------------------------

    async def get_tariff(self, tariff_id):
        tariff = self.tariffs.get(tariff_id)
        return dict(tariff) if tariff else None

    async def get_proxy_tariff(self, proxy_tariff_id):
        tariff = self.proxy_tariffs.get(proxy_tariff_id)
        return dict(tariff) if tariff else None

    # ---- payments ---------------------------------------------------------------

    async def create_payment(self, client_id, amount, provider, currency="RUB", tariff_id=None,
                             proxy_tariff_id=None, extra_option=None, promo_code_id=None, metadata=None):
        return self.add_payment(
            client_id=client_id, amount=amount, provider=provider, currency=currency,
            tariff_id=tariff_id, proxy_tariff_id=proxy_tariff_id, extra_option=extra_option,
            promo_code_id=promo_code_id, metadata=metadata,
        )

    async def get_payment(self, payment_id):
        payment = self.payments.get(payment_id)
        return dict(payment) if payment else None

    async def get_payment_by_external_id(self, provider, external_id):
        for payment in self.payments.values():
            if payment["provider"] == provider and payment["external_id"] == external_id:
                return dict(payment)
        return None

    async def set_payment_external_id(self, payment_id, external_id):
        payment = self.payments[payment_id]
        if payment["external_id"] is None:
            payment["external_id"] = external_id

    async def mark_payment_paid(self, payment_id, external_id=None):
        payment = self.payments.get(payment_id)
        if payment is None:
            return None, False
        if payment["status"] != database.PAYMENT_PENDING:
            return dict(payment), False
        payment["status"] = database.PAYMENT_PAID
        payment["paid_at"] = _now()
        payment["external_id"] = payment["external_id"] or external_id
        result = dict(payment)
        if database.is_top_up(payment):
            client = self.clients[payment["client_id"]]
            client["balance"] += payment["amount"]
            result["new_balance"] = client["balance"]
        if payment["promo_code_id"] is not None and not any(
            u["payment_id"] == payment_id for u in self.promo_code_usages
        ):
            self.promo_code_usages.append({
                "id": self._next_id("promo_code_usages"),
                "promo_code_id": payment["promo_code_id"],
                "client_id": payment["client_id"],
                "payment_id": payment_id,
            })
        return result, True

    async def mark_payment_failed(self, payment_id):
        payment = self.payments.get(payment_id)
        if payment is None or payment["status"] != database.PAYMENT_PENDING:
            return None
        payment["status"] = database.PAYMENT_FAILED
        return dict(payment)

    async def create_balance_payment(self, client_id, amount, currency="RUB", tariff_id=None,
                                     proxy_tariff_id=None, extra_option=None, promo_code=None, metadata=None):
        async with self._lock:
            client = self.clients.get(client_id)
            if client is None:
                raise NotFound(f"Client {client_id} not found")
            if client["balance"] < amount:
                raise InsufficientFunds(f"Insufficient balance: {client['balance']} < {amount}")
            usage = None
            if promo_code is not None:
                usage = self._capped_usage(
                    promo_code["id"], client_id,
                    promo_code.get("max_uses") or 0, promo_code.get("max_uses_per_client") or 0,
                )
                if usage is None:
                    raise Conflict(f"Promo code {promo_code['code']} is no longer available")
            client["balance"] -= amount
            payment = self.add_payment(
                client_id=client_id, amount=amount, currency=currency, provider="balance",
                status=database.PAYMENT_PAID, tariff_id=tariff_id, proxy_tariff_id=proxy_tariff_id,
                extra_option=extra_option, promo_code_id=promo_code["id"] if promo_code else None,
                metadata=metadata,
            )
            if usage is not None:
                usage["payment_id"] = payment["id"]
            payment["new_balance"] = client["balance"]
            return payment

    async def claim_entitlement_apply(self, payment_id):
        payment = self.payments.get(payment_id)
        if (
            payment is None
            or payment["status"] != database.PAYMENT_PAID
            or payment["entitlement_applied_at"] is not None
            or payment["activation_claimed_at"] is not None
        ):
            return False
        payment["activation_claimed_at"] = _now()
        return True

    async def release_entitlement_claim(self, payment_id):
        payment = self.payments[payment_id]
        if payment["entitlement_applied_at"] is None:
            payment["activation_claimed_at"] = None

    async def mark_entitlement_applied(self, payment_id):
        payment = self.payments[payment_id]
        if payment["entitlement_applied_at"] is not None:
            return False
        payment["entitlement_applied_at"] = _now()
        payment["activation_claimed_at"] = None
        return True

    async def get_unapplied_paid_payments(self, limit=100):
        rows = [
            dict(p) for p in self.payments.values()
            if p["status"] == database.PAYMENT_PAID
            and p["entitlement_applied_at"] is None
            and not database.is_top_up(p)
        ]
        return rows[:limit]

    # ---- referral credits -------------------------------------------------------

    async def get_referral_credits(self, payment_id, conn=None):
        return sorted(
            (dict(r) for r in self.referral_credits if r["source_payment_id"] == payment_id),
            key=lambda r: r["level"],
        )

    async def record_referral_credits(self, payment_id, credits):
        async with self._lock:
            existing = await self.get_referral_credits(payment_id)
            if existing:
                return existing, False
            rows = []
            for referrer_id, level, amount in credits:
                row = {
                    "id": self._next_id("referral_credits"),
                    "referrer_id": referrer_id,
                    "level": level,
                    "amount": amount,
                    "source_payment_id": payment_id,
                }
                self.referral_credits.append(row)
                self.clients[referrer_id]["balance"] += amount
                rows.append(dict(row))
            return rows, True

    # ---- promo ------------------------------------------------------------------

    async def get_promo_group_by_code(self, code):
        group = self.promo_groups.get(code)
        return dict(group) if group else None

    async def count_promo_group_activations(self, promo_group_id):
        return sum(1 for group_id, _ in self.promo_activations if group_id == promo_group_id)

    async def has_promo_group_activation(self, promo_group_id, client_id):
        return (promo_group_id, client_id) in self.promo_activations

    async def create_promo_group_activation(self, promo_group_id, client_id, max_activations):
        async with self._lock:
            if max_activations > 0 and await self.count_promo_group_activations(promo_group_id) >= max_activations:
                return None
            if (promo_group_id, client_id) in self.promo_activations:
                return None
            self.promo_activations.append((promo_group_id, client_id))
            return {"promo_group_id": promo_group_id, "client_id": client_id}

    async def get_promo_code_by_code(self, code):
        promo = self.promo_codes.get(code)
        return dict(promo) if promo else None

    async def count_promo_code_usages(self, promo_code_id, client_id=None):
        return sum(
            1 for u in self.promo_code_usages
            if u["promo_code_id"] == promo_code_id and (client_id is None or u["client_id"] == client_id)
        )

    def _capped_usage(self, promo_code_id, client_id, max_uses, max_uses_per_client):
        used = sum(1 for u in self.promo_code_usages if u["promo_code_id"] == promo_code_id)
        used_by_client = sum(
            1 for u in self.promo_code_usages
            if u["promo_code_id"] == promo_code_id and u["client_id"] == client_id
        )
        if (max_uses and used >= max_uses) or (max_uses_per_client and used_by_client >= max_uses_per_client):
            return None
        usage = {
            "id": self._next_id("promo_code_usages"),
            "promo_code_id": promo_code_id,
            "client_id": client_id,
            "payment_id": None,
        }
        self.promo_code_usages.append(usage)
        return usage

    async def record_promo_code_usage(self, promo_code_id, client_id, max_uses, max_uses_per_client, conn=None):
        async with self._lock:
            usage = self._capped_usage(promo_code_id, client_id, max_uses, max_uses_per_client)
            return dict(usage) if usage else None

    # ---- proxy ------------------------------------------------------------------

    async def get_proxy_nodes_for_tariff(self, proxy_tariff_id):
        nodes = []
        for node in self.proxy_nodes:
            if node["status"] != "ONLINE":
                continue
            row = dict(node)
            row["active_slots"] = sum(
                1 for s in self.proxy_slots if s["node_id"] == node["id"] and s["status"] == "ACTIVE"
            )
            nodes.append(row)
        return nodes

    async def get_proxy_slots_by_payment(self, payment_id):
        return sorted(
            (dict(s) for s in self.proxy_slots if s["payment_id"] == payment_id),
            key=lambda s: s["slot_index"],
        )

    async def create_proxy_slots(self, payment, proxy_tariff, slots, expires_at):
        for slot in slots:
            if any(
                s["payment_id"] == payment["id"] and s["slot_index"] == slot["slot_index"]
                for s in self.proxy_slots
            ):
                continue
            self.proxy_slots.append({
                "id": self._next_id("proxy_slots"),
                "payment_id": payment["id"],
                "client_id": payment["client_id"],
                "proxy_tariff_id": proxy_tariff["id"],
                "expires_at": expires_at,
                "status": "ACTIVE",
                **slot,
            })
        return await self.get_proxy_slots_by_payment(payment["id"])

    # ---- auto broadcast ---------------------------------------------------------

    async def get_auto_broadcast_rules(self, enabled_only=True):
        return [dict(r) for r in self.rules.values() if r["enabled"] or not enabled_only]

    async def get_auto_broadcast_rule(self, rule_id):
        rule = self.rules.get(rule_id)
        return dict(rule) if rule else None

    async def get_auto_broadcast_candidates(self, rule_id, trigger_type, *, now, since, window_start):
        rows = []
        for client_id in self.broadcast_candidates.get(rule_id, []):
            client = self.clients[client_id]
            if client["is_blocked"] or (rule_id, client_id) in self.broadcast_logs:
                continue
            rows.append({"id": client_id, "telegram_id": client["telegram_id"], "email": client["email"]})
        return rows

    async def has_auto_broadcast_log(self, rule_id, client_id):
        return (rule_id, client_id) in self.broadcast_logs

    async def insert_auto_broadcast_log(self, rule_id, client_id):
        if (rule_id, client_id) in self.broadcast_logs:
            return False
        self.broadcast_logs.add((rule_id, client_id))
        return True

    # ---- settings ---------------------------------------------------------------

    async def get_system_config(self, keys):
        return {key: self.settings[key] for key in keys if key in self.settings}

    async def get_setting(self, key, default=None):
        return self.settings.get(key, default)


class FakePanel:
    """In-memory VPN panel with the vpn_client coroutine surface"""

    PATCHED = (
        "get_subscriber",
        "find_by_telegram_id",
        "find_by_email",
        "find_by_username",
        "create_subscriber",
        "update_subscriber",
    )

    def __init__(self):
        self.subscribers: Dict[str, RemoteSubscriber] = {}
        self.available = True
        self.created = 0
        self.updates: List[Dict[str, Any]] = []

    def add_subscriber(self, uuid: str, **fields) -> RemoteSubscriber:
        subscriber = RemoteSubscriber(uuid=uuid, **fields)
        self.subscribers[uuid] = subscriber
        return subscriber

    async def _check(self) -> None:
        # yield so concurrent flows interleave at every remote call
        await asyncio.sleep(0)
        if not self.available:
            raise RemoteServiceUnavailable("VPN panel update_user failed: connection refused")

    def _find(self, **match) -> Optional[RemoteSubscriber]:
        for subscriber in self.subscribers.values():
            if all(getattr(subscriber, name) == value for name, value in match.items()):
                return subscriber
        return None

    async def get_subscriber(self, uuid):
        await self._check()
        return self.subscribers.get(uuid)

    async def find_by_telegram_id(self, telegram_id):
        await self._check()
        return self._find(telegram_id=telegram_id)

    async def find_by_email(self, email):
        await self._check()
        return self._find(email=email)

    async def find_by_username(self, username):
        await self._check()
        return self._find(username=username)

    async def create_subscriber(self, username, now, telegram_id=None, email=None):
        await self._check()
        if self._find(username=username) is not None:
            raise RemoteConflict(f"User {username} already exists")
        self.created += 1
        return self.add_subscriber(
            f"uuid-{username}", username=username, expire_at=now,
            telegram_id=telegram_id, email=email,
        )

    async def update_subscriber(self, uuid, *, expire_at, traffic_limit_bytes, device_limit, squad_uuids):
        await self._check()
        subscriber = self.subscribers[uuid]
        subscriber.expire_at = expire_at
        subscriber.traffic_limit_bytes = traffic_limit_bytes
        subscriber.device_limit = device_limit
        subscriber.squad_uuids = list(squad_uuids)
        self.updates.append({"uuid": uuid, "expire_at": expire_at, "squad_uuids": list(squad_uuids)})
        return subscriber


@pytest.fixture(autouse=True)
def no_transports(monkeypatch):
    """No Telegram bot, SMTP or Redis unless a test opts in"""
    monkeypatch.setattr(config, "BOT_TOKEN", "")
    monkeypatch.setattr(config, "SMTP_ENABLED", False)
    monkeypatch.setattr(config, "REDIS_URL", "")
    monkeypatch.setattr(notification_service, "_bot", None)


@pytest.fixture
def ledger(monkeypatch):
    fake = FakeLedger()
    for name in FakeLedger.PATCHED:
        monkeypatch.setattr(database, name, getattr(fake, name))
    return fake


@pytest.fixture
def panel(monkeypatch):
    fake = FakePanel()
    for name in FakePanel.PATCHED:
        monkeypatch.setattr(vpn_client, name, getattr(fake, name))
    return fake


@pytest.fixture
def now():
    """Fixed aware UTC instant for deterministic grants"""
    return datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
