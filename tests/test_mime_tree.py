"""Tests for flattening nested body-part trees."""

from __future__ import annotations

from email.message import EmailMessage

from mailbridge.normalization.mime_tree import (
    decode_body_data,
    extract_attachment_parts,
    extract_body,
    find_part,
    flatten_parts,
    message_to_part_tree,
)

from tests.gmail_fixtures import b64url, gmail_message


def test_flatten_returns_leaves_in_document_order() -> None:
    payload = gmail_message("m1", "Mon, 01 Jan 2024 10:00:00 +0000", with_attachment=True)["payload"]

    leaves = flatten_parts(payload)

    assert [leaf["partId"] for leaf in leaves] == ["0.0", "0.1", "1", "2"]
    assert all(not leaf.get("parts") for leaf in leaves)


def test_flatten_single_leaf_is_its_own_result() -> None:
    leaf = {"partId": "", "mimeType": "text/plain", "body": {"data": b64url("hello")}}

    assert flatten_parts(leaf) == [leaf]


def test_flatten_is_idempotent_over_leaves() -> None:
    payload = gmail_message("m1", "Mon, 01 Jan 2024 10:00:00 +0000")["payload"]
    leaves = flatten_parts(payload)

    again = [item for leaf in leaves for item in flatten_parts(leaf)]
    rewrapped = flatten_parts({"partId": "", "mimeType": "multipart/mixed", "parts": leaves})

    assert again == leaves
    assert rewrapped == leaves


def test_deeply_nested_tree_does_not_recurse() -> None:
    root = {"partId": "", "mimeType": "multipart/mixed", "parts": []}
    node = root
    for depth in range(3000):
        child = {"partId": str(depth), "mimeType": "multipart/mixed", "parts": []}
        node["parts"].append(child)
        node = child
    node["parts"] = [{"partId": "leaf", "mimeType": "text/plain", "body": {"data": b64url("deep")}}]

    leaves = flatten_parts(root)

    assert [leaf["partId"] for leaf in leaves] == ["leaf"]


def test_extract_body_skips_containers_and_named_parts() -> None:
    payload = gmail_message("m1", "Mon, 01 Jan 2024 10:00:00 +0000", with_attachment=True)["payload"]
    leaves = flatten_parts(payload)

    body = extract_body(leaves)
    attachments = extract_attachment_parts(leaves)

    assert [(part.type, part.content) for part in body][0] == ("text/plain", "Hi Bob")
    assert body[1].type == "text/html"
    assert [part["filename"] for part in attachments] == ["logo.png", "report.pdf"]


def test_decode_body_data_accepts_both_alphabets_without_padding() -> None:
    urlsafe = b64url("??>>subject")
    assert decode_body_data(urlsafe.rstrip("=")) == b"??>>subject"
    assert decode_body_data("aGVsbG8") == b"hello"
    assert decode_body_data(None) == b""


def test_message_to_part_tree_matches_gmail_shape() -> None:
    msg = EmailMessage()
    msg["Subject"] = "Report"
    msg.set_content("plain text")
    msg.add_alternative("<b>html</b>", subtype="html")
    msg.add_attachment(b"%PDF-1.4", maintype="application", subtype="pdf", filename="r.pdf")

    tree = message_to_part_tree(msg)
    leaves = flatten_parts(tree)

    assert [leaf["mimeType"] for leaf in leaves] == ["text/plain", "text/html", "application/pdf"]
    assert [part.content.strip() for part in extract_body(leaves)] == ["plain text", "<b>html</b>"]
    pdf = find_part(tree, leaves[2]["partId"])
    assert pdf["filename"] == "r.pdf"
    assert decode_body_data(pdf["body"]["data"]) == b"%PDF-1.4"
