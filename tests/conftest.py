import os

import pytest
import xdg.BaseDirectory

import OpenIt


def write_file(path, text):
  path = str(path)
  os.makedirs(os.path.dirname(path), exist_ok=True)
  with open(path, 'w') as f:
    f.write(text)
  return path


def desktop_text(name, exe=None, mime_types=(), extra=''):
  lines = ['[Desktop Entry]', 'Type=Application', 'Name={}'.format(name)]
  lines.append('Exec={}'.format(exe if exe else name.lower() + ' %F'))
  if mime_types:
    lines.append('MimeType={};'.format(';'.join(mime_types)))
  return '\n'.join(lines) + '\n' + extra


@pytest.fixture
def roots(tmp_path):
  '''
  A user and a system search root, in order of precedence.
  '''
  user = tmp_path / 'home' / 'share' / 'applications'
  system = tmp_path / 'usr' / 'share' / 'applications'
  user.mkdir(parents=True)
  system.mkdir(parents=True)
  return str(user), str(system)


@pytest.fixture
def add_desktop():
  def add(root, relpath, name, **kwargs):
    return write_file(os.path.join(root, relpath), desktop_text(name, **kwargs))
  return add


@pytest.fixture
def mimeapps(tmp_path):
  '''
  The user's and the system's association file paths.
  '''
  return (
    str(tmp_path / 'config' / 'mimeapps.list'),
    str(tmp_path / 'etc' / 'xdg' / 'mimeapps.list'),
  )


@pytest.fixture
def openit(tmp_path, roots, mimeapps):
  return OpenIt.OpenIt(
    search_roots=roots,
    mimeapps_paths=mimeapps,
    user_mimeapps=mimeapps[0],
    cache_path=str(tmp_path / 'cache' / 'openit' / 'desktop-entries.json'),
  )


@pytest.fixture
def pdf_apps(roots, add_desktop):
  user, system = roots
  add_desktop(system, 'evince.desktop', 'Evince', mime_types=['application/pdf'])
  add_desktop(system, 'firefox.desktop', 'Firefox', mime_types=['application/pdf', 'text/html'])
  return roots


@pytest.fixture
def xdg_env(tmp_path, monkeypatch):
  '''
  Point the XDG base directories at a temporary tree.
  '''
  data_home = str(tmp_path / 'home' / 'share')
  config_home = str(tmp_path / 'config')
  monkeypatch.setattr(xdg.BaseDirectory, 'xdg_data_home', data_home)
  monkeypatch.setattr(xdg.BaseDirectory, 'xdg_data_dirs', [data_home, str(tmp_path / 'usr' / 'share')])
  monkeypatch.setattr(xdg.BaseDirectory, 'xdg_config_home', config_home)
  monkeypatch.setattr(xdg.BaseDirectory, 'xdg_config_dirs', [config_home, str(tmp_path / 'etc' / 'xdg')])
  monkeypatch.setattr(xdg.BaseDirectory, 'xdg_cache_home', str(tmp_path / 'cache'))
  monkeypatch.delenv(OpenIt.XDG_CURRENT_DESKTOP, raising=False)
  return tmp_path
