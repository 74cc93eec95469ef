"""Review queue controller: partitioning, pagination, drafts, commits and refinement."""

import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from fintriage.services.ai.finance_refine.contracts import AIFinanceRefineResult
from fintriage.services.commit_service import InFlightGuard
from fintriage.services.review_queue import ReviewConfig, ReviewQueueController
from fintriage.services.triage.contracts import Classification, EntryType

from helpers import ReviewDatabase

REFINE_PATH = "fintriage.services.review_queue.refine_candidate"


class ReviewQueueTestCase(unittest.TestCase):
    config = ReviewConfig(page_size=10)

    def setUp(self):
        self.store = ReviewDatabase()
        self.category = self.store.add_category("Aluguel")
        self.account = self.store.add_account("Itaú")
        self.second_account = self.store.add_account("Nubank")
        self.client = self.store.add_contact("João Silva", phone="11999998888")
        self.seller = self.store.add_contact("Carla", category="Vendedor")
        self.guard = InFlightGuard()
        self.controller = ReviewQueueController(self.store.SessionLocal, self.config, guard=self.guard)

    def tearDown(self):
        self.controller.close()
        self.store.dispose()


class PartitionTests(ReviewQueueTestCase):
    def test_messages_land_in_their_queues(self):
        transaction = self.store.add_message("Paguei o aluguel R$ 1.200,00")
        sale = self.store.add_message("Cliente: João Tipo: venda Valor: 150,00 Peso: 5g Frete: 10,00")
        chat = self.store.add_message("Bom dia!")
        failed = self.store.add_message("Cliente: João Tipo: venda", status="error", reason="Duplicado")

        self.assertEqual(self.controller.counts(), {"transaction": 1, "sale": 1, "discard": 2})
        self.assertEqual([item.id for item in self.controller.queue("transaction")], [str(transaction.id)])
        self.assertEqual([item.id for item in self.controller.queue("sale")], [str(sale.id)])
        discard_ids = {item.id for item in self.controller.queue(Classification.DISCARD)}
        self.assertEqual(discard_ids, {str(chat.id), str(failed.id)})

    def test_candidate_is_built_from_content_and_references(self):
        sale = self.store.add_message("Cliente: João Tipo: venda Valor: 150,00 Peso: 5g Frete: 10,00")

        item = self.controller.get(str(sale.id))

        self.assertEqual(item.candidate.value, "150,00")
        self.assertEqual(item.candidate.client_id, str(self.client.id))
        self.assertEqual(item.candidate.weight, "5")
        self.assertEqual(item.candidate.shipping, "10,00")
        self.assertEqual(item.candidate.type, EntryType.INCOME)
        self.assertEqual(item.candidate.account_id, str(self.account.id))
        self.assertEqual(item.candidate.date, "2024-05-20")
        self.assertEqual(item.sender.id, str(self.client.id))

    def test_processed_messages_are_not_loaded(self):
        self.store.add_message("Paguei 10,00", status="processed")
        self.assertEqual(self.controller.counts(), {"transaction": 0, "sale": 0, "discard": 0})

    def test_sellers(self):
        self.assertEqual([seller.name for seller in self.controller.sellers()], ["Carla"])

    def test_category_hierarchy(self):
        child = self.store.add_category("Aluguel loja", parent_id=self.category.id)
        self.controller.refresh()

        refs = self.controller.references
        self.assertEqual(refs.category(str(self.category.id)).name, "Aluguel")
        self.assertEqual([ref.id for ref in refs.subcategories(str(self.category.id))], [str(child.id)])
        self.assertIsNone(refs.category("missing"))

    def test_change_feed_marks_stale(self):
        self.controller.refresh()
        self.assertFalse(self.controller.is_stale)

        self.store.add_message("Paguei 10,00")

        self.assertTrue(self.controller.is_stale)
        self.assertEqual(self.controller.counts()["transaction"], 1)


class PaginationTests(ReviewQueueTestCase):
    def setUp(self):
        super().setUp()
        for index in range(12):
            self.store.add_message(f"Paguei conta {index} valor {index + 1},00")

    def test_pages_and_clamping(self):
        first = self.controller.page()
        self.assertEqual((first.page, first.total_pages, len(first.items)), (1, 2, 10))

        second = self.controller.next_page()
        self.assertEqual((second.page, len(second.items)), (2, 2))
        self.assertEqual(self.controller.next_page().page, 2)
        self.assertEqual(self.controller.go_to_page(99).page, 2)
        self.assertEqual(self.controller.go_to_page(-3).page, 1)
        self.assertEqual(self.controller.previous_page().page, 1)

    def test_empty_queue_has_one_page(self):
        page = self.controller.page("sale")
        self.assertEqual((page.page, page.total_pages, page.items), (1, 1, ()))

    def test_queue_change_resets_page(self):
        self.controller.next_page()
        self.controller.set_active_queue("sale")
        self.controller.set_active_queue("transaction")
        self.assertEqual(self.controller.active_queue, Classification.TRANSACTION)
        self.assertEqual(self.controller.page().page, 1)

    def test_count_change_resets_page(self):
        self.controller.next_page()
        self.store.add_message("Paguei mais uma conta 5,00")
        self.assertEqual(self.controller.page().page, 1)


class DraftTests(ReviewQueueTestCase):
    def test_draft_survives_unrelated_refresh(self):
        message = self.store.add_message("Paguei o aluguel R$ 1.200,00")
        self.controller.update_field(str(message.id), "value", "1.250,00")

        self.store.add_message("Bom dia!")

        self.assertTrue(self.controller.is_stale)
        self.assertEqual(self.controller.get(str(message.id)).candidate.value, "1.250,00")

    def test_untouched_candidate_follows_new_references(self):
        sale = self.store.add_message("Cliente: Maria Tipo: venda Valor: 50,00")
        edited = self.store.add_message("Cliente: Maria Tipo: venda Valor: 70,00")
        self.assertFalse(self.controller.get(str(sale.id)).candidate.client_id)
        self.controller.update_field(str(edited.id), "value", "75,00")

        maria = self.store.add_contact("Maria Souza")
        self.store.add_message("Bom dia!")

        self.assertEqual(self.controller.get(str(sale.id)).candidate.client_id, str(maria.id))
        edited_item = self.controller.get(str(edited.id))
        self.assertEqual(edited_item.candidate.value, "75,00")
        self.assertFalse(edited_item.candidate.client_id)

    def test_unknown_field_raises(self):
        message = self.store.add_message("Paguei 10,00")
        with self.assertRaises(ValueError):
            self.controller.update_field(str(message.id), "status", "processed")

    def test_restore_yields_fresh_candidate(self):
        message = self.store.add_message("Paguei o aluguel R$ 1.200,00")
        self.controller.update_field(str(message.id), "value", "9,99")

        self.assertTrue(self.controller.reject(str(message.id), "Duplicado").ok)
        self.assertEqual(self.controller.get(str(message.id)).classification, Classification.DISCARD)
        self.assertTrue(self.controller.restore(str(message.id)).ok)

        item = self.controller.get(str(message.id))
        self.assertEqual(item.classification, Classification.TRANSACTION)
        self.assertEqual(item.candidate.value, "1.200,00")
        self.assertIsNone(item.message.ignore_reason)


class CommitNoticeTests(ReviewQueueTestCase):
    def test_approve_sale_removes_message(self):
        message = self.store.add_message("Cliente: João Tipo: venda Valor: 150,00 Peso: 5g Frete: 10,00")

        notice = self.controller.approve(str(message.id))

        self.assertTrue(notice.ok)
        self.assertEqual(notice.action, "approve")
        self.assertIsNotNone(notice.record_id)
        self.assertEqual(self.controller.counts()["sale"], 0)
        self.assertEqual(self.store.message(message.id).status, "processed")

    def test_approve_transaction_after_editing(self):
        message = self.store.add_message("Paguei o aluguel R$ 1.200,00")
        self.controller.update_field(str(message.id), "category_id", str(self.category.id))

        self.assertTrue(self.controller.approve(str(message.id)).ok)

    def test_failed_approval_names_action(self):
        message = self.store.add_message("Paguei 10,00")

        with self.assertLogs("fintriage.services.review_queue", level="WARNING"):
            notice = self.controller.approve(str(message.id))

        self.assertFalse(notice.ok)
        self.assertEqual(notice.action, "approve")
        self.assertIn("approve", notice.message)
        self.assertEqual(self.store.message(message.id).status, "pending")

    def test_discard_items_cannot_be_approved(self):
        message = self.store.add_message("Bom dia!")
        notice = self.controller.approve(str(message.id))
        self.assertFalse(notice.ok)

    def test_busy_message_is_rejected(self):
        message = self.store.add_message("Paguei 10,00")
        self.controller.update_field(str(message.id), "category_id", str(self.category.id))

        with self.guard.hold(str(message.id), "approve"):
            notice = self.controller.approve(str(message.id))

        self.assertFalse(notice.ok)
        self.assertEqual(self.store.message(message.id).status, "pending")

    def test_reject_with_custom_reason(self):
        message = self.store.add_message("oi")
        self.controller.reject(str(message.id), "Outro", "teste interno")
        self.assertEqual(self.store.message(message.id).ignore_reason, "teste interno")

    def test_clear_discarded_needs_confirmation(self):
        self.store.add_message("spam", status="error")

        refused = self.controller.clear_discarded()
        self.assertFalse(refused.ok)
        self.assertEqual(refused.action, "clear_discarded")

        self.assertTrue(self.controller.clear_discarded(confirm=True).ok)
        self.assertEqual(self.controller.counts()["discard"], 0)


class RefinementTests(ReviewQueueTestCase):
    config = ReviewConfig(api_key="test-key", ai_provider="groq", page_size=10)

    def test_refine_merges_non_empty_fields(self):
        message = self.store.add_message("mandaram 150 pelo zap")
        refined = AIFinanceRefineResult(
            classification="sale",
            value="150,00",
            description="",
            client_id=str(self.client.id),
        )

        with patch(REFINE_PATH, new=AsyncMock(return_value=refined)) as mocked:
            notice = asyncio.run(self.controller.refine(str(message.id)))

        self.assertTrue(notice.ok)
        mocked.assert_awaited_once()
        self.assertEqual(mocked.await_args.kwargs["api_key"], "test-key")
        item = self.controller.get(str(message.id))
        self.assertEqual(item.classification, Classification.SALE)
        self.assertEqual(item.candidate.value, "150,00")
        self.assertEqual(item.candidate.client_id, str(self.client.id))
        self.assertEqual(item.candidate.description, "Pagamento/Despesa")
        self.assertTrue(item.refined)

    def test_ai_failure_keeps_heuristic_candidate(self):
        message = self.store.add_message("Paguei o aluguel R$ 1.200,00")
        before = self.controller.get(str(message.id)).candidate

        with patch(REFINE_PATH, new=AsyncMock(return_value=None)):
            notice = asyncio.run(self.controller.refine(str(message.id)))

        self.assertFalse(notice.ok)
        self.assertEqual(self.controller.get(str(message.id)).candidate, before)

    def test_auto_refinement_runs_once_per_message_sequentially(self):
        for content in ("Paguei 10,00", "Recebi 20,00", "Cliente: João Tipo: venda"):
            self.store.add_message(content)
        self.store.add_message("Bom dia!")
        self.store.add_message("Paguei 5,00", status="error")

        in_flight = []
        seen = []

        async def _fake_refine(content, *args, **kwargs):
            in_flight.append(self.controller.refining)
            seen.append(kwargs["message_id"])
            await asyncio.sleep(0)
            return None

        with patch(REFINE_PATH, new=AsyncMock(side_effect=_fake_refine)) as mocked:
            attempted = asyncio.run(self.controller.run_auto_refinement())
            again = asyncio.run(self.controller.run_auto_refinement())

        self.assertEqual(attempted, 3)
        self.assertEqual(again, 0)
        self.assertEqual(mocked.await_count, 3)
        self.assertEqual(len(set(seen)), 3)
        self.assertEqual(in_flight, seen)
        for message_id in seen:
            self.assertTrue(self.controller.was_refine_attempted(message_id))

    def test_no_credential_disables_refinement(self):
        controller = ReviewQueueController(self.store.SessionLocal, ReviewConfig(api_key=None, ai_provider="groq"))
        self.store.add_message("Paguei 10,00")
        try:
            with patch(REFINE_PATH, new=AsyncMock()) as mocked:
                self.assertEqual(asyncio.run(controller.run_auto_refinement()), 0)
            mocked.assert_not_awaited()
        finally:
            controller.close()


class ConfigTests(unittest.TestCase):
    def test_from_settings_uses_provider_key(self):
        with patch.dict(
            "os.environ",
            {"AI_REVIEW_PROVIDER": "claude", "ANTHROPIC_API_KEY": "sk-test", "REVIEW_PAGE_SIZE": "25"},
        ):
            from fintriage.core.config import get_settings

            get_settings.cache_clear()
            config = ReviewConfig.from_settings()

        self.assertEqual(config.ai_provider, "claude")
        self.assertEqual(config.api_key, "sk-test")
        self.assertEqual(config.page_size, 25)
        self.assertTrue(config.ai_enabled)

    def test_default_entry_type_setting(self):
        with patch.dict("os.environ", {"TRIAGE_DEFAULT_ENTRY_TYPE": "income", "TRIAGE_SALE_WINS_TIES": "false"}):
            from fintriage.core.config import get_settings

            get_settings.cache_clear()
            config = ReviewConfig.from_settings()

        self.assertEqual(config.default_entry_type, EntryType.INCOME)
        self.assertFalse(config.sale_wins_ties)

    def test_blank_provider_picks_first_configured_key(self):
        env = {"AI_REVIEW_PROVIDER": "", "GROQ_API_KEY": "", "OPENAI_API_KEY": "", "ANTHROPIC_API_KEY": "sk-ant"}
        with patch.dict("os.environ", env):
            from fintriage.core.config import get_settings

            get_settings.cache_clear()
            config = ReviewConfig.from_settings()

        self.assertEqual(config.ai_provider, "claude")
        self.assertEqual(config.api_key, "sk-ant")
        self.assertTrue(config.ai_enabled)

    def test_blank_provider_without_keys_stays_disabled(self):
        env = {"AI_REVIEW_PROVIDER": "", "GROQ_API_KEY": "", "OPENAI_API_KEY": "", "ANTHROPIC_API_KEY": ""}
        with patch.dict("os.environ", env):
            from fintriage.core.config import get_settings

            get_settings.cache_clear()
            config = ReviewConfig.from_settings()

        self.assertEqual(config.ai_provider, "groq")
        self.assertFalse(config.ai_enabled)
