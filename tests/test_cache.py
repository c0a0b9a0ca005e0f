import json
import logging
import os

import pytest

import OpenIt
from conftest import write_file


@pytest.fixture
def cache(tmp_path):
  return OpenIt.CacheManager(str(tmp_path / 'cache' / 'openit' / 'desktop-entries.json'))


def touch_later(path):
  st = os.stat(path)
  os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 10 * 10**9))


def test_second_call_hits_the_cache(cache, pdf_apps):
  first, hit = cache.get_or_build(pdf_apps)
  assert hit is False
  assert os.path.exists(cache.path)

  second, hit = cache.get_or_build(pdf_apps)
  assert hit is True
  assert second == first


def test_touching_a_file_invalidates(cache, pdf_apps):
  user, system = pdf_apps
  cache.get_or_build(pdf_apps)
  touch_later(os.path.join(system, 'evince.desktop'))

  _, hit = cache.get_or_build(pdf_apps)

  assert hit is False


def test_new_file_invalidates(cache, pdf_apps, add_desktop):
  user, system = pdf_apps
  cache.get_or_build(pdf_apps)
  add_desktop(user, 'okular.desktop', 'Okular', mime_types=['application/pdf'])

  entries, hit = cache.get_or_build(pdf_apps)

  assert hit is False
  assert 'okular.desktop' in [e.id for e in entries]


def test_fingerprint_is_stable(cache, pdf_apps):
  assert cache.fingerprint(pdf_apps) == cache.fingerprint(pdf_apps)
  assert cache.fingerprint(pdf_apps) != cache.fingerprint(list(reversed(pdf_apps)))


def test_corrupt_cache_is_a_miss(cache, pdf_apps):
  first, _ = cache.get_or_build(pdf_apps)
  with open(cache.path, 'w') as f:
    f.write('{"version": 1, "fingerprint": ')

  entries, hit = cache.get_or_build(pdf_apps)
  assert hit is False
  assert entries == first

  _, hit = cache.get_or_build(pdf_apps)
  assert hit is True


def test_invalid_entries_are_a_miss(cache, pdf_apps):
  cache.get_or_build(pdf_apps)
  with open(cache.path) as f:
    snapshot = json.load(f)
  del snapshot['entries'][0]['name']
  with open(cache.path, 'w') as f:
    json.dump(snapshot, f)

  _, hit = cache.get_or_build(pdf_apps)

  assert hit is False


def test_other_schema_version_is_a_miss(cache, pdf_apps):
  cache.get_or_build(pdf_apps)
  with open(cache.path) as f:
    snapshot = json.load(f)
  snapshot['version'] = OpenIt.CACHE_SCHEMA_VERSION + 1
  with open(cache.path, 'w') as f:
    json.dump(snapshot, f)

  _, hit = cache.get_or_build(pdf_apps)

  assert hit is False


def test_force_refresh(cache, pdf_apps):
  cache.get_or_build(pdf_apps)
  _, hit = cache.get_or_build(pdf_apps, force_refresh=True)
  assert hit is False


def test_clear(cache, pdf_apps):
  cache.get_or_build(pdf_apps)
  cache.clear()
  assert not os.path.exists(cache.path)

  _, hit = cache.get_or_build(pdf_apps)
  assert hit is False

  cache.clear()
  cache.clear()


def test_cache_keeps_actions_and_metadata(cache, roots, add_desktop):
  user, system = roots
  add_desktop(
    system, 'viewer.desktop', 'Viewer',
    extra='Actions=edit;\nX-Custom=1\n\n[Desktop Action edit]\nName=Edit\nExec=viewer --edit\n'
  )
  first, _ = cache.get_or_build(roots)
  second, hit = cache.get_or_build(roots)

  assert hit is True
  assert second[0].actions == (OpenIt.DesktopAction('edit', 'Edit', 'viewer --edit', None),)
  assert second[0].metadata == {'X-Custom' : '1'}
  assert second == first


def test_no_temporary_files_are_left(cache, pdf_apps):
  cache.get_or_build(pdf_apps)
  assert os.listdir(os.path.dirname(cache.path)) == [os.path.basename(cache.path)]


def test_write_failure_is_not_fatal(cache, pdf_apps, monkeypatch, caplog):
  def fail(path, text):
    raise OpenIt.PersistFailure('failed to write {}: disk full'.format(path))
  monkeypatch.setattr(OpenIt, 'atomic_write', fail)

  with caplog.at_level(logging.WARNING):
    entries, hit = cache.get_or_build(pdf_apps)

  assert hit is False
  assert len(entries) == 2
  assert 'disk full' in caplog.text


def test_skipped_count_survives_a_cache_hit(cache, roots, add_desktop, caplog):
  user, system = roots
  add_desktop(system, 'good.desktop', 'Good')
  write_file(os.path.join(system, 'noname.desktop'), '[Desktop Entry]\nExec=x\n')

  with caplog.at_level(logging.WARNING):
    cache.get_or_build(roots)
  assert cache.skipped == 1
  assert 'skipped 1 invalid desktop file(s)' in caplog.text

  caplog.clear()
  with caplog.at_level(logging.WARNING):
    entries, hit = cache.get_or_build(roots)
  assert hit is True
  assert len(entries) == 1
  assert cache.skipped == 1
  assert caplog.text == ''
