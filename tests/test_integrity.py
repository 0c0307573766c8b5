from chatcommerce.catalog import Catalog
from chatcommerce.integrity import extract_prices, stated_quantities, verify_prices

ADDITIVE_CATALOG = Catalog.from_raw(
    [
        {
            "name": "Burger",
            "price": 15000,
            "variants": [{"name": "Extras", "type": "additive", "options": [{"value": "Fromage", "price": 500}]}],
        }
    ]
)
UNIT_CATALOG = Catalog.from_raw([{"name": "Savon", "price": 5000}])


def test_base_plus_additive_is_valid():
    assert verify_prices("Le burger avec fromage fait 15500 FCFA.", ADDITIVE_CATALOG).valid


def test_unrelated_price_is_flagged():
    result = verify_prices("Ce burger coûte 99999 FCFA.", ADDITIVE_CATALOG)

    assert not result.valid
    issue = result.issues[0]
    assert issue.mentioned_price == 99999
    assert issue.issue_type == "price_hallucination"
    assert 15500 in issue.valid_sample


def test_quantity_multiple_and_tolerance():
    assert verify_prices("Pour 10 savons: 50,000 FCFA", UNIT_CATALOG).valid
    assert verify_prices("Total 50 300 FCFA", UNIT_CATALOG).valid
    assert not verify_prices("Total 80,000 FCFA", UNIT_CATALOG).valid


def test_stated_quantity_explains_uncommon_multiple():
    text = "16 x 5 000 FCFA = 80 000 FCFA"
    assert verify_prices(text, UNIT_CATALOG).valid


def test_running_sum_of_mentions_is_valid():
    catalog = Catalog.from_raw([{"name": "A", "price": 7300}, {"name": "B", "price": 4100}])
    text = "A: 7300 FCFA, B: 4100 FCFA, total 11400 FCFA"
    assert verify_prices(text, catalog).valid


def test_catalog_without_prices_never_flags():
    catalog = Catalog.from_raw([{"name": "Service"}])
    assert verify_prices("Cela fait 12345 FCFA", catalog).valid


def test_no_mentions_is_valid():
    assert verify_prices("Bonjour, que puis-je faire pour vous ?", UNIT_CATALOG).valid


def test_extract_prices_formats():
    amounts = [mention.amount for mention in extract_prices("1 500 FCFA, 1.500 FCFA, 1,500 CFA et 1500F CFA")]
    assert amounts == [1500, 1500, 1500, 1500]


def test_small_amounts_are_ignored():
    assert extract_prices("Livraison 20 FCFA") == []


def test_custom_currency_tokens():
    mentions = extract_prices("Prix: 2500 XOF", ["XOF"])
    assert [mention.amount for mention in mentions] == [2500]


def test_stated_quantities_ignore_price_spans():
    text = "3 pizzas à 5 000 FCFA"
    assert stated_quantities(text, extract_prices(text)) == {3}
