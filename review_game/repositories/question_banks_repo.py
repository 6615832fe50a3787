from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from .common import new_id, normalize_item, now_iso, set_clause
from .profiles_repo import profile_key

PUBLIC_BANKS_PK = "BANKS#PUBLIC"


def bank_key(bank_id: str) -> dict[str, str]:
    bid = str(bank_id or "").strip()
    if not bid:
        raise ValueError("bank_id is required")
    return {"pk": f"BANK#{bid}", "sk": "BANK"}


def question_key(bank_id: str, question_id: str) -> dict[str, str]:
    qid = str(question_id or "").strip()
    if not qid:
        raise ValueError("question_id is required")
    return {"pk": bank_key(bank_id)["pk"], "sk": f"QUESTION#{qid}"}


def slot_key(bank_id: str, category: str, point_value: int) -> dict[str, str]:
    return {"pk": bank_key(bank_id)["pk"], "sk": f"SLOT#{category}#{int(point_value)}"}


def _bank_index(bank: dict[str, Any]) -> dict[str, str]:
    # Prebuilt banks have no owner and are listed with the public ones.
    owner = str(bank.get("owner_id") or "").strip()
    pk = PUBLIC_BANKS_PK if (bank.get("is_public") or not owner) else f"OWNER#{owner}#BANKS"
    return {"gsi1pk": pk, "gsi1sk": f"{bank.get('title') or ''}#{bank.get('id')}"}


def bank_out(item: dict[str, Any] | None) -> dict[str, Any] | None:
    b = normalize_item(item)
    if not b:
        return None
    b.setdefault("owner_id", None)
    b.setdefault("description", None)
    b.setdefault("difficulty", None)
    b["is_custom"] = bool(b.get("is_custom"))
    b["is_public"] = bool(b.get("is_public"))
    return b


def get_bank(bank_id: str) -> dict[str, Any] | None:
    return bank_out(get_main_table().get_item(key=bank_key(bank_id)))


def _list_index(pk: str) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(pk),
    )
    return [b for b in (bank_out(it) for it in items) if b]


def list_public_banks() -> list[dict[str, Any]]:
    return _list_index(PUBLIC_BANKS_PK)


def list_owned_banks(owner_id: str) -> list[dict[str, Any]]:
    return _list_index(f"OWNER#{owner_id}#BANKS")


def new_bank_item(*, owner_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    bid = new_id()
    now = now_iso()
    item: dict[str, Any] = {
        **bank_key(bid),
        "entityType": "QuestionBank",
        "id": bid,
        "owner_id": owner_id,
        "is_custom": True,
        "is_public": False,
        "created_at": now,
        "updated_at": now,
    }
    item.update({k: v for k, v in fields.items() if v is not None})
    item.update(_bank_index(item))
    return item


def create_custom_bank(*, owner_id: str, fields: dict[str, Any], limit: int | None) -> dict[str, Any]:
    """
    Create a custom bank and consume one custom bank slot atomically.

    ``limit=None`` means unlimited; otherwise the profile's counter must be
    below ``limit`` or the transaction fails with DdbConflict.
    """
    table = get_main_table()
    item = new_bank_item(owner_id=owner_id, fields=fields)
    values: dict[str, Any] = {":one": 1}
    cond = "attribute_exists(pk)"
    if limit is not None:
        values[":limit"] = int(limit)
        cond += " AND (attribute_not_exists(#cnt) OR #cnt < :limit)"
    table.transact_write(
        puts=[table.tx_put(item=item, condition_expression="attribute_not_exists(pk)")],
        updates=[
            table.tx_update(
                key=profile_key(owner_id),
                update_expression="ADD #cnt :one",
                expression_attribute_names={"#cnt": "custom_bank_count"},
                expression_attribute_values=values,
                condition_expression=cond,
            )
        ],
    )
    return bank_out(item) or {}


def update_bank(bank_id: str, fields: dict[str, Any]) -> dict[str, Any] | None:
    table = get_main_table()
    changes = dict(fields)
    if "title" in changes or "is_public" in changes:
        current = table.get_required(key=bank_key(bank_id), message="Question bank not found")
        changes.update(_bank_index({**current, **changes}))
    changes["updated_at"] = now_iso()
    expr, names, values = set_clause(changes)
    it = table.update_item(
        key=bank_key(bank_id),
        update_expression=expr,
        expression_attribute_names=names,
        expression_attribute_values=values,
        condition_expression="attribute_exists(pk)",
    )
    return bank_out(it)


def delete_bank(bank_id: str, *, owner_id: str) -> int:
    """
    Delete a custom bank, its questions and slot guards, and release the
    owner's custom bank slot. Returns the number of child items removed.
    """
    table = get_main_table()
    table.delete_item(key=bank_key(bank_id), condition_expression="attribute_exists(pk)")
    children = table.query_all(key_condition_expression=Key("pk").eq(bank_key(bank_id)["pk"]))
    removed = table.batch_delete(keys=[{"pk": it["pk"], "sk": it["sk"]} for it in children])
    try:
        table.update_item(
            key=profile_key(owner_id),
            update_expression="ADD #cnt :neg",
            expression_attribute_names={"#cnt": "custom_bank_count"},
            expression_attribute_values={":neg": -1, ":zero": 0},
            condition_expression="attribute_exists(pk) AND #cnt > :zero",
            return_values="NONE",
        )
    except DdbConflict:
        pass
    return removed


# --- questions ---

def question_out(item: dict[str, Any] | None) -> dict[str, Any] | None:
    q = normalize_item(item)
    if not q:
        return None
    for k in ("teacher_notes", "image_url"):
        q.setdefault(k, None)
    return q


def list_questions(bank_id: str) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        key_condition_expression=Key("pk").eq(bank_key(bank_id)["pk"]) & Key("sk").begins_with("QUESTION#"),
    )
    out = [q for q in (question_out(it) for it in items) if q]
    out.sort(key=lambda q: (str(q.get("category") or ""), int(q.get("point_value") or 0)))
    return out


def get_question(bank_id: str, question_id: str) -> dict[str, Any] | None:
    return question_out(get_main_table().get_item(key=question_key(bank_id, question_id)))


def _question_items(bank_id: str, fields: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    qid = new_id()
    now = now_iso()
    item: dict[str, Any] = {
        **question_key(bank_id, qid),
        "entityType": "Question",
        "id": qid,
        "bank_id": bank_id,
        "created_at": now,
        "updated_at": now,
    }
    item.update({k: v for k, v in fields.items() if v is not None})
    slot = {
        **slot_key(bank_id, item["category"], item["point_value"]),
        "entityType": "QuestionSlot",
        "question_id": qid,
    }
    return item, slot


def create_question(bank_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Insert a question; DdbConflict when its category/point slot is taken."""
    table = get_main_table()
    item, slot = _question_items(bank_id, fields)
    table.transact_write(
        condition_checks=[table.tx_condition_check(key=bank_key(bank_id), condition_expression="attribute_exists(pk)")],
        puts=[
            table.tx_put(item=slot, condition_expression="attribute_not_exists(pk)"),
            table.tx_put(item=item),
        ],
    )
    return question_out(item) or {}


def update_question(bank_id: str, question_id: str, fields: dict[str, Any], *, current: dict[str, Any]) -> None:
    """Update a question, moving its slot guard when category or points change."""
    table = get_main_table()
    changes = {**fields, "updated_at": now_iso()}
    expr, names, values = set_clause(changes)
    updates = [
        table.tx_update(
            key=question_key(bank_id, question_id),
            update_expression=expr,
            expression_attribute_names=names,
            expression_attribute_values=values,
            condition_expression="attribute_exists(pk)",
        )
    ]
    old_cat, old_pts = current.get("category"), int(current.get("point_value") or 0)
    new_cat = changes.get("category", old_cat)
    new_pts = int(changes.get("point_value", old_pts))
    puts: list[dict[str, Any]] = []
    deletes: list[dict[str, Any]] = []
    if (new_cat, new_pts) != (old_cat, old_pts):
        deletes.append(table.tx_delete(key=slot_key(bank_id, old_cat, old_pts)))
        puts.append(
            table.tx_put(
                item={
                    **slot_key(bank_id, new_cat, new_pts),
                    "entityType": "QuestionSlot",
                    "question_id": question_id,
                },
                condition_expression="attribute_not_exists(pk)",
            )
        )
    table.transact_write(puts=puts, deletes=deletes, updates=updates)


def delete_question(bank_id: str, question: dict[str, Any]) -> None:
    table = get_main_table()
    table.transact_write(
        deletes=[
            table.tx_delete(key=question_key(bank_id, question["id"]), condition_expression="attribute_exists(pk)"),
            table.tx_delete(key=slot_key(bank_id, question.get("category"), int(question.get("point_value") or 0))),
        ]
    )


def copy_questions(*, target_bank_id: str, questions: list[dict[str, Any]]) -> int:
    """Bulk copy into a freshly created bank; slots cannot collide there."""
    items: list[dict[str, Any]] = []
    for q in questions:
        fields = {
            k: q.get(k)
            for k in ("category", "question_text", "answer_text", "point_value", "teacher_notes", "image_url", "position")
        }
        item, slot = _question_items(target_bank_id, fields)
        items.extend([item, slot])
    get_main_table().batch_put(items=items)
    return len(questions)
