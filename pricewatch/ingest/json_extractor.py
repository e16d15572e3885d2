"""Extract product data from structured data embedded in HTML pages."""

import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from selectolax.parser import HTMLParser

logger = logging.getLogger(__name__)

_CURRENCY_SYMBOLS = {
    "€": "EUR",
    "$": "USD",
    "£": "GBP",
}

_SCHEMA_AVAILABILITY = {
    "instock": "in_stock",
    "instoreonly": "in_stock",
    "onlineonly": "in_stock",
    "limitedavailability": "limited",
    "presale": "limited",
    "preorder": "limited",
    "backorder": "out_of_stock",
    "outofstock": "out_of_stock",
    "soldout": "out_of_stock",
    "discontinued": "out_of_stock",
}


def parse_price(value: Any) -> Optional[Decimal]:
    """
    Parse a price from a number or a display string.

    Handles "1.234,56 €", "$1,234.56" and plain "19.99".
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))

    text = re.sub(r"[^\d.,]", "", str(value))
    if not text:
        return None

    if "," in text and "." in text:
        # Whichever separator comes last is the decimal separator
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    else:
        separator = "," if "," in text else "."
        head, _, tail = text.rpartition(separator)
        if separator in text and (text.count(separator) > 1 or len(tail) == 3):
            # "1.234" and "1,299" group thousands
            text = text.replace(separator, "")
        elif separator in text:
            text = head + "." + tail

    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def detect_currency(text: Optional[str], default: str = "EUR") -> str:
    """Detect an ISO currency code from a price string."""
    if not text:
        return default
    upper = text.upper()
    for code in ("EUR", "USD", "GBP"):
        if code in upper:
            return code
    for symbol, code in _CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code
    return default


def normalize_availability(value: Optional[str]) -> Optional[str]:
    """Map schema.org availability URLs or free text onto our states."""
    if not value:
        return None
    key = str(value).rstrip("/").rsplit("/", 1)[-1].replace("_", "").replace(" ", "").lower()
    if key in _SCHEMA_AVAILABILITY:
        return _SCHEMA_AVAILABILITY[key]

    lower = str(value).lower()
    if "out of stock" in lower or "nicht verfügbar" in lower or "unavailable" in lower:
        return "out_of_stock"
    if "in stock" in lower or "auf lager" in lower or "lieferbar" in lower:
        return "in_stock"
    if "only" in lower or "nur noch" in lower or "limited" in lower:
        return "limited"
    return None


def extract_json_ld(html: str) -> List[Dict[str, Any]]:
    """
    Extract JSON-LD structured data from script tags.

    Returns list of JSON-LD objects found in the page, with @graph
    containers and top-level arrays flattened.
    """
    results: List[Dict[str, Any]] = []
    tree = HTMLParser(html)
    for script in tree.css('script[type="application/ld+json"]'):
        try:
            data = json.loads(script.text())
        except json.JSONDecodeError:
            continue

        stack = data if isinstance(data, list) else [data]
        for obj in stack:
            if not isinstance(obj, dict):
                continue
            results.append(obj)
            graph = obj.get("@graph")
            if isinstance(graph, list):
                results.extend(o for o in graph if isinstance(o, dict))
    return results


def _is_type(obj: Dict[str, Any], name: str) -> bool:
    obj_type = obj.get("@type", "")
    if isinstance(obj_type, list):
        return name in obj_type
    return obj_type == name


def find_product(json_ld_objects: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return the first schema.org Product object."""
    for obj in json_ld_objects:
        if _is_type(obj, "Product"):
            return obj
        if _is_type(obj, "ItemPage") and isinstance(obj.get("mainEntity"), dict):
            entity = obj["mainEntity"]
            if _is_type(entity, "Product"):
                return entity
    return None


def _first_offer(product: Dict[str, Any]) -> Dict[str, Any]:
    offers = product.get("offers")
    if isinstance(offers, list):
        offers = offers[0] if offers else {}
    if not isinstance(offers, dict):
        return {}
    if _is_type(offers, "AggregateOffer") and "price" not in offers:
        nested = offers.get("offers")
        if isinstance(nested, list) and nested and isinstance(nested[0], dict):
            merged = dict(nested[0])
            merged.setdefault("priceCurrency", offers.get("priceCurrency"))
            return merged
        return {**offers, "price": offers.get("lowPrice")}
    return offers


def _name_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("name")
    if isinstance(value, list):
        value = value[0] if value else None
    return clean_text(value) if isinstance(value, str) else None


def clean_text(text: Optional[str]) -> Optional[str]:
    """Collapse whitespace; None for empty strings."""
    if not text:
        return None
    return re.sub(r"\s+", " ", text).strip() or None


def _meta(tree: HTMLParser, *names: str) -> Optional[str]:
    for name in names:
        node = (
            tree.css_first(f'meta[property="{name}"]')
            or tree.css_first(f'meta[name="{name}"]')
            or tree.css_first(f'meta[itemprop="{name}"]')
        )
        if node is not None:
            content = node.attributes.get("content")
            if content:
                return content.strip()
    return None


def extract_product_fields(html: str) -> Dict[str, Any]:
    """
    Extract product fields from JSON-LD, falling back to meta tags.

    Returns a dict with the keys title, description, image_url, brand,
    category, price, price_text, currency, availability, seller_name,
    shipping_cost, rating, review_count. Missing values are None.
    """
    fields: Dict[str, Any] = {
        "title": None,
        "description": None,
        "image_url": None,
        "brand": None,
        "category": None,
        "price": None,
        "price_text": None,
        "currency": None,
        "availability": None,
        "seller_name": None,
        "shipping_cost": None,
        "rating": None,
        "review_count": None,
    }

    product = find_product(extract_json_ld(html))
    if product:
        offer = _first_offer(product)
        image = product.get("image")
        if isinstance(image, list):
            image = image[0] if image else None
        if isinstance(image, dict):
            image = image.get("url")

        fields["title"] = clean_text(product.get("name"))
        fields["description"] = clean_text(product.get("description"))
        fields["image_url"] = image if isinstance(image, str) else None
        fields["brand"] = _name_of(product.get("brand"))
        fields["category"] = _name_of(product.get("category"))
        fields["price_text"] = str(offer.get("price")) if offer.get("price") is not None else None
        fields["price"] = parse_price(offer.get("price"))
        fields["currency"] = offer.get("priceCurrency")
        fields["availability"] = normalize_availability(offer.get("availability"))
        fields["seller_name"] = _name_of(offer.get("seller"))

        shipping = offer.get("shippingDetails")
        if isinstance(shipping, list):
            shipping = shipping[0] if shipping else None
        if isinstance(shipping, dict) and isinstance(shipping.get("shippingRate"), dict):
            fields["shipping_cost"] = parse_price(shipping["shippingRate"].get("value"))

        rating = product.get("aggregateRating")
        if isinstance(rating, dict):
            try:
                fields["rating"] = float(str(rating.get("ratingValue")).replace(",", "."))
            except (TypeError, ValueError):
                pass
            try:
                fields["review_count"] = int(rating.get("reviewCount") or rating.get("ratingCount"))
            except (TypeError, ValueError):
                pass

    tree = HTMLParser(html)
    if fields["title"] is None:
        fields["title"] = clean_text(_meta(tree, "og:title", "name"))
    if fields["image_url"] is None:
        fields["image_url"] = _meta(tree, "og:image", "image")
    if fields["price"] is None:
        price_text = _meta(tree, "product:price:amount", "og:price:amount", "price")
        fields["price_text"] = price_text
        fields["price"] = parse_price(price_text)
    if fields["currency"] is None:
        fields["currency"] = _meta(tree, "product:price:currency", "og:price:currency", "priceCurrency")
    if fields["availability"] is None:
        fields["availability"] = normalize_availability(
            _meta(tree, "product:availability", "og:availability", "availability")
        )

    return fields
