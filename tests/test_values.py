from specverse.sheets import validate_filled_values

META = {
    1: {"label": "Flow", "infoType": "decimal", "required": True},
    2: {"label": "Stages", "infoType": "int"},
    3: {"label": "Seal Type", "infoType": "varchar", "options": ["Single", "Double"]},
    4: {"label": "Notes", "infoType": "varchar"},
}


def _messages(errors):
    return {e["infoTemplateId"]: e["message"] for e in errors}


def test_valid_values_pass():
    values = {"1": "12.5", "2": "-3", "3": "Double", "4": "anything"}
    assert validate_filled_values(META, values) == []


def test_blank_optional_values_are_skipped():
    assert validate_filled_values(META, {"1": "1e3", "2": "  ", "3": ""}) == []


def test_required_blank_is_reported():
    errors = validate_filled_values(META, {"1": "   "})
    assert _messages(errors) == {1: "This field is required."}
    assert errors[0]["label"] == "Flow"


def test_int_rejects_decimals_and_text():
    assert _messages(validate_filled_values(META, {"1": "1", "2": "2.5"})) == {2: "Enter a whole number."}
    assert _messages(validate_filled_values(META, {"1": "1", "2": "two"})) == {2: "Enter a whole number."}


def test_decimal_rejects_non_finite():
    assert _messages(validate_filled_values(META, {"1": "abc"})) == {1: "Enter a number."}
    assert _messages(validate_filled_values(META, {"1": "inf"})) == {1: "Enter a number."}
    assert _messages(validate_filled_values(META, {"1": "nan"})) == {1: "Enter a number."}


def test_option_mismatch_carries_preview():
    meta = {7: {"label": "Size", "infoType": "varchar", "options": [str(i) for i in range(15)]}}
    errors = validate_filled_values(meta, {"7": "99"})
    assert errors[0]["message"] == "Choose a valid option."
    assert errors[0]["optionsPreview"] == [str(i) for i in range(10)]
    assert errors[0]["optionsCount"] == 15


def test_values_are_trimmed_before_checks():
    assert validate_filled_values(META, {"1": " 4 ", "3": " Single "}) == []
