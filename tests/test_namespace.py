from scriptaudit.namespace import ROOT_NAMESPACE, project_memberships, qualified_namespace, relative_namespace
from scriptaudit.schema import ProjectMembership


def test_namespace_replaces_root_with_host():
    assert qualified_namespace("/home/x/proj/a/b/f.sh", "/home/x", "H") == "H|proj/a/b"


def test_root_level_script_gets_root_namespace():
    assert relative_namespace("/home/x/f.sh", "/home/x") == ROOT_NAMESPACE
    assert qualified_namespace("/home/x/f.sh", "/home/x/", "H") == "H|."


def test_sibling_directories_stay_distinct():
    rows = project_memberships(["/home/x/a/b/foo.sh", "/home/x/c/a/foo.sh"], "/home/x", "H")
    assert rows == [
        ProjectMembership("H", "foo.sh", "a/b"),
        ProjectMembership("H", "foo.sh", "c/a"),
    ]


def test_path_outside_root_keeps_its_directory():
    assert relative_namespace("/opt/tools/run.sh", "/home/x") == "/opt/tools"
