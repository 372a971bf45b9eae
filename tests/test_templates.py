from keyfiles import (
    DEFAULT_TEMPLATE,
    ManagedUser,
    discover_templates,
    expand_template,
    parse_authorized_keys_templates,
    resolve_targets,
)

ALICE = ManagedUser("alice", 1000, 1000, "/home/alice")


def test_parse_single_directive():
    text = "Port 22\nAuthorizedKeysFile .ssh/authorized_keys .ssh/authorized_keys2\n"
    assert parse_authorized_keys_templates(text) == [
        ".ssh/authorized_keys",
        ".ssh/authorized_keys2",
    ]


def test_parse_is_case_insensitive_and_accepts_equals():
    text = "authorizedkeysfile=/etc/ssh/keys/%u\n  AUTHORIZEDKEYSFILE   %h/.ssh/extra\n"
    assert parse_authorized_keys_templates(text) == ["/etc/ssh/keys/%u", "%h/.ssh/extra"]


def test_parse_unions_and_dedupes_in_first_seen_order():
    text = "\n".join(
        [
            "# AuthorizedKeysFile /commented/out",
            "AuthorizedKeysFile .ssh/a .ssh/b",
            "",
            "Match User deploy",
            "    AuthorizedKeysFile .ssh/b /srv/keys/%u",
        ]
    )
    assert parse_authorized_keys_templates(text) == [".ssh/a", ".ssh/b", "/srv/keys/%u"]


def test_parse_ignores_none_and_quotes():
    text = 'AuthorizedKeysFile none\nAuthorizedKeysFile ".ssh/quoted"\n'
    assert parse_authorized_keys_templates(text) == [".ssh/quoted"]


def test_parse_without_directive_falls_back_to_default():
    assert parse_authorized_keys_templates("PermitRootLogin no\n") == [DEFAULT_TEMPLATE]
    assert parse_authorized_keys_templates("") == [DEFAULT_TEMPLATE]


def test_unreadable_config_warns_and_uses_default(tmp_path, rep):
    templates = discover_templates(str(tmp_path / "missing_sshd_config"), rep)
    assert templates == [DEFAULT_TEMPLATE]
    warns = [x for x in rep.items if x.severity == "WARN"]
    assert len(warns) == 1
    assert "ConfigUnreadable" in warns[0].details


def test_discover_reads_config_file(tmp_path, rep):
    cfg = tmp_path / "sshd_config"
    cfg.write_text("AuthorizedKeysFile %h/.ssh/%u_keys\n")
    assert discover_templates(str(cfg), rep) == ["%h/.ssh/%u_keys"]
    assert rep.count("WARN") == 0


def test_expand_home_and_user_tokens():
    assert expand_template("%h/.ssh/%u_keys", ALICE) == "/home/alice/.ssh/alice_keys"


def test_expand_relative_template_is_under_home():
    assert expand_template(".ssh/authorized_keys", ALICE) == "/home/alice/.ssh/authorized_keys"


def test_expand_percent_escape():
    assert expand_template("/keys/%%u/%u", ALICE) == "/keys/%u/alice"


def test_expand_leaves_unknown_token_and_warns(rep):
    assert expand_template("/keys/%i/%u", ALICE, rep) == "/keys/%i/alice"
    assert rep.count("WARN") == 1
    assert "%i" in rep.items[0].details


def test_expand_trailing_percent(rep):
    assert expand_template("/keys/%u%", ALICE, rep) == "/keys/alice%"
    assert rep.count("WARN") == 1


def test_resolve_targets_collapses_equivalent_paths():
    targets = resolve_targets(
        [".ssh/authorized_keys", "%h/.ssh/authorized_keys", "/home/%u/.ssh/authorized_keys2"],
        ALICE,
    )
    assert [t.path for t in targets] == [
        "/home/alice/.ssh/authorized_keys",
        "/home/alice/.ssh/authorized_keys2",
    ]
    assert all(t.user is ALICE for t in targets)


def test_parse_none_alone_means_no_key_files():
    assert parse_authorized_keys_templates("AuthorizedKeysFile none\n") == []
    assert parse_authorized_keys_templates("AuthorizedKeysFile \"none\"\n") == []


def test_discover_warns_when_sshd_reads_no_key_files(tmp_path, rep):
    cfg = tmp_path / "sshd_config"
    cfg.write_text("AuthorizedKeysFile none\nAuthorizedKeysCommand /usr/bin/lookup %u\n")
    assert discover_templates(str(cfg), rep) == []
    assert rep.count("WARN") == 1
    assert "none" in rep.items[0].details
