"""Queue classification of raw WhatsApp message bodies."""

import unittest

from fintriage.services.triage.classifier import classify
from fintriage.services.triage.contracts import Classification


class ClassifierLabelTests(unittest.TestCase):
    def test_tipo_venda_is_sale(self):
        self.assertEqual(classify("Tipo: venda, anel 5g"), Classification.SALE)

    def test_tipo_label_overrides_later_keywords(self):
        # "pix recebido" would otherwise win as a payment confirmation.
        self.assertEqual(classify("tipo: venda pix recebido"), Classification.SALE)

    def test_tipo_pagamento_overrides_sale_vocabulary(self):
        self.assertEqual(classify("Tipo: pagamento cliente pedido 150,00"), Classification.TRANSACTION)

    def test_tipo_saida_without_accent(self):
        self.assertEqual(classify("tipo saida aluguel"), Classification.TRANSACTION)

    def test_unknown_label_word_falls_through(self):
        self.assertEqual(classify("Tipo: outro pix recebido"), Classification.TRANSACTION)
        self.assertEqual(classify("tipo: xyz bom dia"), Classification.DISCARD)


class ClassifierKeywordTests(unittest.TestCase):
    def test_payment_confirmation_beats_sale_vocabulary(self):
        self.assertEqual(classify("Cliente pagou a peça ontem"), Classification.TRANSACTION)

    def test_sale_vocabulary(self):
        self.assertEqual(classify("Quero encomendar uma joia de 5 gramas"), Classification.SALE)

    def test_sale_wins_ties_by_default(self):
        # "cliente" is sale vocabulary, "pix" transaction vocabulary.
        self.assertEqual(classify("cliente mandou o pix"), Classification.SALE)

    def test_transaction_first_when_policy_flipped(self):
        self.assertEqual(
            classify("cliente mandou o pix", sale_before_transaction=False),
            Classification.TRANSACTION,
        )

    def test_transaction_vocabulary(self):
        self.assertEqual(classify("Paguei o boleto da luz"), Classification.TRANSACTION)

    def test_bare_currency_amount(self):
        self.assertEqual(classify("R$ 45"), Classification.TRANSACTION)
        self.assertEqual(classify("ficou 32,90"), Classification.TRANSACTION)

    def test_plain_chat_is_discard(self):
        self.assertEqual(classify("Bom dia, tudo bem?"), Classification.DISCARD)

    def test_empty_and_none_are_discard(self):
        self.assertEqual(classify(""), Classification.DISCARD)
        self.assertEqual(classify(None), Classification.DISCARD)
        self.assertEqual(classify("   "), Classification.DISCARD)

    def test_case_insensitive(self):
        self.assertEqual(classify("PIX RECEBIDO"), Classification.TRANSACTION)

    def test_deterministic(self):
        content = "Cliente: João Tipo: venda Valor: 150,00"
        self.assertEqual({classify(content) for _ in range(5)}, {Classification.SALE})
