from modtrust.autoload import ensure_autoload, read_declared


def test_creates_declaration(layout):
    added = ensure_autoload(layout.autoload_conf, ["vmmon", "vmnet"])

    assert added == ["vmmon", "vmnet"]
    assert layout.autoload_conf.read_text() == "vmmon\nvmnet\n"


def test_repeated_calls_never_duplicate(layout):
    for _ in range(5):
        ensure_autoload(layout.autoload_conf, ["vmmon", "vmnet"])

    lines = layout.autoload_conf.read_text().splitlines()
    assert lines.count("vmmon") == 1
    assert lines.count("vmnet") == 1


def test_existing_entries_are_kept_in_place(layout):
    layout.autoload_conf.parent.mkdir(parents=True)
    layout.autoload_conf.write_text("# local modules\nkvm\nvmnet\nloop")

    added = ensure_autoload(layout.autoload_conf, ["vmmon", "vmnet"])

    assert added == ["vmmon"]
    assert layout.autoload_conf.read_text() == "# local modules\nkvm\nvmnet\nloop\nvmmon\n"


def test_commented_name_does_not_count(layout):
    layout.autoload_conf.parent.mkdir(parents=True)
    layout.autoload_conf.write_text("# vmmon\n; vmnet\n")

    assert ensure_autoload(layout.autoload_conf, ["vmmon", "vmnet"]) == ["vmmon", "vmnet"]
    assert read_declared(layout.autoload_conf) == ["vmmon", "vmnet"]


def test_duplicate_input_names_added_once(layout):
    assert ensure_autoload(layout.autoload_conf, ["vmmon", "vmmon"]) == ["vmmon"]
    assert layout.autoload_conf.read_text() == "vmmon\n"
