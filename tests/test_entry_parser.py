import pytest

import OpenIt
from conftest import write_file


def parse(tmp_path, text, name='app.desktop', **kwargs):
  path = write_file(tmp_path / name, text)
  return OpenIt.parse_desktop_entry(path, **kwargs)


def test_parse_simple_entry(tmp_path):
  entry = parse(tmp_path, '''[Desktop Entry]
Type=Application
Name=Test App
Exec=testapp %F
Comment=A test application
Icon=test-icon
MimeType=text/plain;text/html;
Categories=Utility;TextEditor;
''', source_priority=2)

  assert entry.id == 'app.desktop'
  assert entry.name == 'Test App'
  assert entry.exec == 'testapp %F'
  assert entry.comment == 'A test application'
  assert entry.icon == 'test-icon'
  assert entry.mime_types == ('text/plain', 'text/html')
  assert entry.categories == ('Utility', 'TextEditor')
  assert entry.source_priority == 2
  assert entry.entry_type == OpenIt.TYPE_APPLICATION
  assert OpenIt.is_candidate(entry)


def test_booleans_default_to_false(tmp_path):
  entry = parse(tmp_path, '[Desktop Entry]\nName=App\nExec=app\n')
  assert entry.is_terminal is False
  assert entry.no_display is False
  assert entry.hidden is False
  assert entry.icon is None
  assert entry.comment is None
  assert entry.actions == ()


def test_boolean_flags(tmp_path):
  entry = parse(tmp_path, '''[Desktop Entry]
Name=App
Exec=app
Terminal=true
NoDisplay=true
''')
  assert entry.is_terminal is True
  assert entry.no_display is True
  assert not OpenIt.is_candidate(entry)


def test_lists_drop_empty_segments(tmp_path):
  entry = parse(tmp_path, '''[Desktop Entry]
Name=App
Exec=app
MimeType=text/plain;;Text/HTML;text/html;
''')
  assert entry.mime_types == ('text/plain', 'text/html')


def test_unknown_keys_are_kept_as_metadata(tmp_path):
  entry = parse(tmp_path, '''[Desktop Entry]
Name=App
Exec=app
Keywords=edit;text;
X-GNOME-UsesNotifications=true
StartupWMClass=app
''')
  assert entry.metadata == {
    'Keywords' : 'edit;text;',
    'X-GNOME-UsesNotifications' : 'true',
    'StartupWMClass' : 'app',
  }


def test_actions(tmp_path):
  entry = parse(tmp_path, '''[Desktop Entry]
Name=Image Viewer
Exec=viewer %f
Icon=viewer
Actions=edit;missing;print;broken;

[Desktop Action edit]
Name=Edit Image
Exec=viewer --edit %f
Icon=edit-icon

[Desktop Action print]
Name=Print Image
Exec=viewer --print %f

[Desktop Action broken]
Name=Broken Action
''')
  assert entry.actions == (
    OpenIt.DesktopAction('edit', 'Edit Image', 'viewer --edit %f', 'edit-icon'),
    OpenIt.DesktopAction('print', 'Print Image', 'viewer --print %f', None),
  )


def test_action_groups_not_listed_are_ignored(tmp_path):
  entry = parse(tmp_path, '''[Desktop Entry]
Name=App
Exec=app

[Desktop Action stray]
Name=Stray
Exec=app --stray
''')
  assert entry.actions == ()


def test_values_may_contain_equals_signs(tmp_path):
  entry = parse(tmp_path, '''[Desktop Entry]
Name=App
Exec=app --option=value
Comment=a=b
''')
  assert entry.exec == 'app --option=value'
  assert entry.comment == 'a=b'


def test_missing_name(tmp_path):
  with pytest.raises(OpenIt.MissingRequiredField) as e:
    parse(tmp_path, '[Desktop Entry]\nExec=app\n')
  assert e.value.field == 'Name'


def test_missing_exec(tmp_path):
  with pytest.raises(OpenIt.MissingRequiredField) as e:
    parse(tmp_path, '[Desktop Entry]\nName=App\n')
  assert e.value.field == 'Exec'


def test_hidden_entry_needs_no_other_fields(tmp_path):
  entry = parse(tmp_path, '[Desktop Entry]\nHidden=true\n')
  assert entry.hidden is True
  assert not OpenIt.is_candidate(entry)


def test_unsupported_type(tmp_path):
  with pytest.raises(OpenIt.UnsupportedType) as e:
    parse(tmp_path, '[Desktop Entry]\nType=Service\nName=Svc\nExec=svc\n')
  assert e.value.entry_type == 'Service'
  assert isinstance(e.value, OpenIt.MalformedEntry)


def test_link_entries_are_parsed_but_not_candidates(tmp_path):
  entry = parse(tmp_path, '''[Desktop Entry]
Type=Link
Name=Homepage
URL=https://example.com
MimeType=text/html;
''')
  assert entry.entry_type == OpenIt.TYPE_LINK
  assert entry.exec == ''
  assert entry.metadata == {'URL' : 'https://example.com'}
  assert not OpenIt.is_candidate(entry)


def test_missing_header(tmp_path):
  with pytest.raises(OpenIt.MalformedEntry):
    parse(tmp_path, '[Something Else]\nName=App\nExec=app\n')


def test_invalid_line(tmp_path):
  with pytest.raises(OpenIt.MalformedEntry):
    parse(tmp_path, '[Desktop Entry]\nName=App\nExec=app\nthis is not a key\n')


def test_missing_file(tmp_path):
  with pytest.raises(OpenIt.IoFailure):
    OpenIt.parse_desktop_entry(str(tmp_path / 'nope.desktop'))


def test_format_and_parse_again(tmp_path):
  original = parse(tmp_path, '''[Desktop Entry]
Type=Application
Name=Image Viewer
Exec=viewer %f
Icon=viewer
Comment=View images
MimeType=image/png;image/jpeg;
Categories=Graphics;Viewer;
Terminal=true
Actions=edit;
Keywords=image;picture;
X-Custom=1

[Desktop Action edit]
Name=Edit Image
Exec=viewer --edit %f
''')
  path = write_file(tmp_path / 'copy' / 'app.desktop', OpenIt.format_desktop_entry(original))
  copy = OpenIt.parse_desktop_entry(path)
  assert copy._replace(source_path=original.source_path) == original
