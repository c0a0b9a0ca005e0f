#!/usr/bin/env python3
# -*- coding: utf-8 -*-

# Copyright (C) 2026  Xyne
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# (version 2) as published by the Free Software Foundation.
#
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston, MA  02110-1301, USA.

'''
OpenIt resolves the applications that can open a file or MIME-type and manages
the user's overrides. It follows the freedesktop.org specifications:

    http://standards.freedesktop.org/mime-apps-spec/mime-apps-spec-latest.html
    http://standards.freedesktop.org/desktop-entry-spec/desktop-entry-spec-latest.html
    http://standards.freedesktop.org/basedir-spec/basedir-spec-latest.html

Desktop entries are parsed with pyxdg and the parsed entries are kept in a JSON
cache under $XDG_CACHE_HOME so that the application directories only need to be
rescanned when something in them changes:

    http://pyxdg.readthedocs.org/en/latest/index.html

Only the user's association file is ever written. All other association files
and all desktop entries are read-only.
'''

import argparse
import collections
import fnmatch
import hashlib
import itertools
import json
import logging
import mimetypes
import os
import shlex
import stat
import subprocess
import sys
import tempfile

import xdg.BaseDirectory
import xdg.DesktopEntry
import xdg.Exceptions
import xdg.Mime



################################### Globals ####################################

NAME = 'OpenIt'
OPENIT_DEFAULT_ARGUMENTS_FILE = 'default_arguments.txt'
OPENIT_CACHE_FILE = 'desktop-entries.json'

# Bump this whenever the snapshot or the serialized form of DesktopEntry changes.
CACHE_SCHEMA_VERSION = 2

# Files and paths
MIMEAPPS_LIST_FILE = 'mimeapps.list'
APP_DIR = 'applications'
DESKTOP_EXTENSION = '.desktop'
FLATPAK_USER_APP_DIR = os.path.join('flatpak', 'exports', 'share', APP_DIR)

# Name of current desktop for desktop-specific configuration.
XDG_CURRENT_DESKTOP = 'XDG_CURRENT_DESKTOP'

# Association file sections
ADDED_ASSOCIATIONS_SECTION = 'Added Associations'
REMOVED_ASSOCIATIONS_SECTION = 'Removed Associations'
DEFAULT_APPLICATIONS_SECTION = 'Default Applications'
ASSOCIATION_SECTIONS = (
  DEFAULT_APPLICATIONS_SECTION,
  ADDED_ASSOCIATIONS_SECTION,
  REMOVED_ASSOCIATIONS_SECTION,
)

# Desktop entry groups
DESKTOP_ENTRY_GROUP = 'Desktop Entry'
DESKTOP_ACTION_GROUP_FMT = 'Desktop Action {}'

# Desktop entry types
TYPE_APPLICATION = 'Application'
TYPE_LINK = 'Link'
TYPE_DIRECTORY = 'Directory'
SUPPORTED_TYPES = (TYPE_APPLICATION, TYPE_LINK, TYPE_DIRECTORY)

# Keys of the main group that map to DesktopEntry fields. Everything else is
# kept as metadata.
KNOWN_KEYS = (
  'Type',
  'Name',
  'Exec',
  'Icon',
  'Comment',
  'MimeType',
  'Categories',
  'Terminal',
  'NoDisplay',
  'Hidden',
  'Actions',
)

# Executables
# The command-line utility, for another way to determine MIME-types.
EXE_FILE = 'file'

# http://standards.freedesktop.org/shared-mime-info-spec/shared-mime-info-spec-latest.html#idm140625828597376
MIMETYPE_BLOCKDEVICE= 'inode/blockdevice'
MIMETYPE_CHARDEVICE = 'inode/chardevice'
MIMETYPE_DIRECTORY = 'inode/directory'
MIMETYPE_FIFO = 'inode/fifo'
MIMETYPE_SOCKET = 'inode/socket'

# Top-level media types. Other arguments with a slash are paths or file names.
MIME_MEDIA_TYPES = (
  'application',
  'audio',
  'chemical',
  'font',
  'image',
  'inode',
  'message',
  'model',
  'multipart',
  'text',
  'video',
  'x-content',
  'x-scheme-handler',
)

# Characters that make a MIME-type a shell-style pattern.
MIMETYPE_PATTERN_CHARS = '*?['

# Markers for text output.
MARKER_DEFAULT = '*'
MARKER_ASSOCIATED = '+'
MARKER_AVAILABLE = '-'

MUTATION_OPS = ('set', 'add', 'remove', 'unset')

ASSOCIATION_MODIFICATION_METAVAR = ('<MIME-type | pattern | extension | filepath>', '<desktop file>')



#################################### Errors ####################################

class Error(Exception):
  '''
  Base class of all errors raised by OpenIt.
  '''
  pass



class IoFailure(Error):
  pass



class Unreadable(IoFailure):
  pass



class MalformedEntry(Error):
  pass



class MissingRequiredField(MalformedEntry):
  def __init__(self, field, path=None):
    self.field = field
    self.path = path
    super().__init__('missing required field "{}" in {}'.format(field, path))



class UnsupportedType(MalformedEntry):
  def __init__(self, entry_type, path=None):
    self.entry_type = entry_type
    self.path = path
    super().__init__('unsupported type "{}" in {}'.format(entry_type, path))



class CacheCorrupt(Error):
  pass



class UnknownMimeType(Error):
  pass



class PersistFailure(Error):
  pass



class UnknownDesktopEntry(Error):
  def __init__(self, desktop):
    self.desktop = desktop
    super().__init__('desktop entry "{}" not found'.format(desktop))



################################# Data Model ###################################

DesktopAction = collections.namedtuple(
  'DesktopAction',
  ('action_id', 'name', 'exec', 'icon')
)

DesktopEntry = collections.namedtuple(
  'DesktopEntry',
  (
    'id',
    'name',
    'exec',
    'icon',
    'comment',
    'mime_types',
    'categories',
    'is_terminal',
    'no_display',
    'hidden',
    'actions',
    'source_path',
    'source_priority',
    'entry_type',
    'metadata',
  )
)

ResolvedCandidate = collections.namedtuple(
  'ResolvedCandidate',
  (
    'entry_id',
    'name',
    'exec',
    'desktop_file_path',
    'icon',
    'comment',
    'is_xdg_associated',
    'xdg_priority',
    'is_default',
    'action_id',
  )
)



def is_candidate(entry):
  '''
  True if the entry may be offered as a handler.
  '''
  return entry.entry_type == TYPE_APPLICATION \
  and not entry.hidden \
  and not entry.no_display



def entry_to_dict(entry):
  '''
  Convert a DesktopEntry to a JSON-serializable dictionary.
  '''
  d = entry._asdict()
  d['mime_types'] = list(entry.mime_types)
  d['categories'] = list(entry.categories)
  d['actions'] = list(a._asdict() for a in entry.actions)
  d['metadata'] = dict(entry.metadata)
  return d



def entry_from_dict(d):
  '''
  Inverse of entry_to_dict(). Raises CacheCorrupt if the dictionary does not
  describe a DesktopEntry.
  '''
  try:
    d = dict(d)
    d['mime_types'] = tuple(d['mime_types'])
    d['categories'] = tuple(d['categories'])
    d['actions'] = tuple(DesktopAction(**a) for a in d['actions'])
    d['metadata'] = dict(d['metadata'])
    return DesktopEntry(**d)
  except (KeyError, TypeError, ValueError) as e:
    raise CacheCorrupt('invalid entry: {}'.format(e)) from e



############################### Config Functions ###############################

def default_arguments_path():
  '''
  The path to a plaintext file containing shell-parsable arguments to add to
  OpenIt before argument parsing.
  '''
  return os.path.join(
    xdg.BaseDirectory.xdg_config_home,
    NAME.lower(),
    OPENIT_DEFAULT_ARGUMENTS_FILE
  )



def default_arguments():
  '''
  Load default arguments from default_arguments_path().
  '''
  path = default_arguments_path()
  logging.debug('loading arguments from {}'.format(path))
  try:
    with open(path, 'r') as f:
      return shlex.split(f.readline())
  except FileNotFoundError:
    return None



def default_cache_path():
  '''
  The path to the desktop entry cache.
  '''
  return os.path.join(
    xdg.BaseDirectory.xdg_cache_home,
    NAME.lower(),
    OPENIT_CACHE_FILE
  )



################################## Debugging ###################################

def logging_debug_and_yield(msg, lst):
  '''
  Pretty-print a debugging message followed by a list of arguments. This is an
  iterator so that it can be used to log lists with "yield from" without
  building an intermediate list or tuple.
  '''
  for item in lst:
    logging.debug('{}: {}'.format(msg, item))
    yield item



############################## Generic Functions ###############################

def unique_items(f):
  '''
  Function decorator to remove duplicates from iterable functions.
  '''
  def g(*args, **kwargs):
    seen = set()
    for x in f(*args, **kwargs):
      if x in seen:
        continue
      else:
        yield x
        seen.add(x)
  return g



@unique_items
def nonempty_items(values):
  '''
  Iterate over the non-empty, stripped values without duplicates.
  '''
  for v in values:
    v = v.strip()
    if v:
      yield v



def ensure_desktop_name(arg):
  '''
  Reduce the argument to a desktop file name, adding the desktop extension if
  it is missing.
  '''
  a = os.path.basename(arg.strip())
  return a if a.endswith(DESKTOP_EXTENSION) else a + DESKTOP_EXTENSION



def atomic_write(path, text):
  '''
  Replace the file at path with the given text. The text is written to a
  temporary file in the same directory which is then renamed over the target so
  readers only ever see the old or the new content.

  Raises PersistFailure if anything goes wrong. The target is then unchanged.
  '''
  dpath = os.path.dirname(os.path.abspath(path))
  tmp_path = None
  try:
    os.makedirs(dpath, exist_ok=True)
    with tempfile.NamedTemporaryFile(
      mode='w',
      encoding='utf-8',
      dir=dpath,
      prefix='.{}.'.format(os.path.basename(path)),
      suffix='.tmp',
      delete=False
    ) as f:
      tmp_path = f.name
      f.write(text)
      f.flush()
      os.fsync(f.fileno())
    os.replace(tmp_path, path)
  except OSError as e:
    if tmp_path:
      try:
        os.remove(tmp_path)
      except FileNotFoundError:
        pass
    raise PersistFailure('failed to write {}: {}'.format(path, e)) from e
  logging.debug('saved {}'.format(path))



################################## MIME-types ##################################

def normalize_mimetype(mimetype):
  '''
  Drop parameters and whitespace and lower-case a MIME-type.
  '''
  return mimetype.split(';', 1)[0].strip().lower()



def is_mimetype_pattern(mimetype):
  return any(c in mimetype for c in MIMETYPE_PATTERN_CHARS)



def looks_like_mimetype(arg):
  '''
  True if the argument has the form "media/subtype" with a known top-level
  media type, or a pattern in its place.
  '''
  try:
    media, subtype = normalize_mimetype(arg).split('/')
  except ValueError:
    return False
  return bool(subtype) \
  and (media in MIME_MEDIA_TYPES or is_mimetype_pattern(media))



def mimetype_by_name(name):
  '''
  Attempt to determine the MIME-type of a file by name. The file does not need
  to exist. Returns None if nothing matches.
  '''
  mimetype = None
  mt = xdg.Mime.get_type_by_name(name)
  if mt:
    mimetype = '{}/{}'.format(mt.media, mt.subtype)
  if not mimetype:
    mimetype = mimetypes.guess_type(name)[0]
  return mimetype



def mimetype_by_content(path):
  '''
  Attempt to determine the MIME-type of a regular (existing) file by content.
  '''
  mimetype = None
  mt = xdg.Mime.get_type_by_contents(path)
  if mt:
    mimetype = '{}/{}'.format(mt.media, mt.subtype)
  if not mimetype:
    cmd = [EXE_FILE, '--mime-type', path]
    try:
      cp = subprocess.run(cmd, stdout=subprocess.PIPE, check=True)
    except (FileNotFoundError, subprocess.CalledProcessError) as e:
      logging.debug('mimetype_by_content: [{}]'.format(e))
    else:
      mimetype = cp.stdout.rsplit(b': ', 1)[-1].strip().decode() or None
  return mimetype



def sniff_mime(path, content_first=True):
  '''
  Determine the MIME-type of an existing path. Special files map to the
  "inode/*" types. Raises Unreadable if the path cannot be accessed and
  UnknownMimeType if no type could be determined.
  '''
  try:
    mode = os.stat(path).st_mode
  except OSError as e:
    raise Unreadable('{}: {}'.format(path, e)) from e

  if stat.S_ISBLK(mode):
    return MIMETYPE_BLOCKDEVICE
  elif stat.S_ISCHR(mode):
    return MIMETYPE_CHARDEVICE
  elif stat.S_ISDIR(mode):
    return MIMETYPE_DIRECTORY
  elif stat.S_ISFIFO(mode):
    return MIMETYPE_FIFO
  elif stat.S_ISSOCK(mode):
    return MIMETYPE_SOCKET

  if content_first:
    fs = (mimetype_by_content, mimetype_by_name)
  else:
    fs = (mimetype_by_name, mimetype_by_content)
  for f in fs:
    try:
      mimetype = f(path)
    except OSError as e:
      raise Unreadable('{}: {}'.format(path, e)) from e
    if mimetype:
      return normalize_mimetype(mimetype)
  raise UnknownMimeType('failed to determine the MIME-type of {}'.format(path))



def extension_to_mimetype(arg):
  '''
  Translate a file extension (".md", "md") or a file name ("notes.md",
  "docs/notes.md") to a MIME-type. Raises UnknownMimeType if none is known.
  '''
  name = os.path.basename(arg.strip())
  if '.' not in name:
    name = '.' + name
  if name.startswith('.'):
    name = 'x' + name
  mimetype = mimetype_by_name(name)
  if not mimetype:
    raise UnknownMimeType('no MIME-type is known for {}'.format(arg))
  return normalize_mimetype(mimetype)



def arg_to_mimetype(arg, content_first=True):
  '''
  Interpret a command-line argument as a MIME-type. Existing paths are sniffed,
  MIME-types and MIME-type patterns ("image/*") are used directly and anything
  else is treated as a file extension or the name of a file.
  '''
  if os.path.exists(arg):
    return sniff_mime(arg, content_first=content_first)
  elif looks_like_mimetype(arg):
    return normalize_mimetype(arg)
  else:
    return extension_to_mimetype(arg)



################################ Path Functions ################################

def desktop_mimeapps_filenames():
  '''
  Iterate over names of current desktop as defined in the XDG_CURRENT_DESKTOP
  environment variable.
  '''
  desktop = os.getenv(XDG_CURRENT_DESKTOP)
  if desktop:
    for d in desktop.split(':'):
      if d:
        yield '{}-{}'.format(d.lower(), MIMEAPPS_LIST_FILE)



def config_directories(user=True, system=True):
  config_home = xdg.BaseDirectory.xdg_config_home
  if user:
    yield config_home
  if system:
    for d in xdg.BaseDirectory.xdg_config_dirs:
      if d != config_home:
        yield d



def application_directories(user=True, system=True):
  '''
  Iterate over the application subdirectories of the XDG data directories,
  the user's first.
  '''
  data_home = xdg.BaseDirectory.xdg_data_home
  if user:
    yield os.path.join(data_home, APP_DIR)
  if system:
    for d in xdg.BaseDirectory.xdg_data_dirs:
      if d != data_home:
        yield os.path.join(d, APP_DIR)



@unique_items
def mimeapps_list_paths(current_desktop=True, user=True, system=True):
  '''
  Iterate over all possible association files in their order of precedence as
  specified here:

      http://standards.freedesktop.org/mime-apps-spec/mime-apps-spec-latest.html#file

  Desktop-specific files precede the generic file of the same directory.
  '''
  names = list(desktop_mimeapps_filenames()) if current_desktop else []
  names.append(MIMEAPPS_LIST_FILE)
  dpaths = itertools.chain(
    config_directories(user=user, system=system),
    application_directories(user=user, system=system)
  )
  for dpath in logging_debug_and_yield('mimeapps_list_paths', dpaths):
    for name in names:
      yield os.path.join(dpath, name)



def user_mimeapps_path(current_desktop=False):
  '''
  Get the user's association file.
  '''
  name = MIMEAPPS_LIST_FILE
  if current_desktop:
    try:
      name = next(desktop_mimeapps_filenames())
    except StopIteration:
      pass
  return os.path.join(xdg.BaseDirectory.xdg_config_home, name)



@unique_items
def desktop_directories(user=True, system=True):
  '''
  Iterate over desktop entry search roots in order of precedence:

      https://specifications.freedesktop.org/menu-spec/menu-spec-latest.html#adding-items

  '''
  dpaths = list(application_directories(user=user, system=system))
  # Flatpak only adds its exports to XDG_DATA_DIRS in login shells.
  if user:
    dpaths.append(os.path.join(xdg.BaseDirectory.xdg_data_home, FLATPAK_USER_APP_DIR))
  yield from logging_debug_and_yield('desktop_directories', dpaths)



def walk_search_root(root):
  '''
  Recursively iterate over the directories below a search root in a stable
  order. Each item is a tuple of the directory path and the sorted names of the
  desktop files that it contains.
  '''
  for dpath, dnames, fnames in os.walk(root):
    dnames.sort()
    yield dpath, sorted(f for f in fnames if f.endswith(DESKTOP_EXTENSION))



def desktop_id(root, path):
  '''
  Derive the desktop file ID from the path relative to its search root.
  '''
  return os.path.relpath(path, root).replace(os.sep, '-')



################################ Desktop files #################################

def parse_desktop_entry(path, desktop_id=None, source_priority=0):
  '''
  Parse a desktop file into a DesktopEntry. Raises a MalformedEntry subclass if
  the file is not a usable desktop entry and IoFailure if it cannot be read.
  '''
  if desktop_id is None:
    desktop_id = os.path.basename(path)

  de = xdg.DesktopEntry.DesktopEntry()
  # This is necessary because the filename attribute is only set in the "new"
  # method for some reason.
  de.filename = path

  logging.debug('parsing {}'.format(path))
  if not os.path.isfile(path):
    raise IoFailure('{} is not a file'.format(path))
  try:
    de.parse(path)
  except xdg.Exceptions.ParsingError as e:
    raise MalformedEntry('{}: {}'.format(path, e)) from e
  group = de.defaultGroup
  # pyxdg silently returns without any content if the file is unreadable.
  if group not in de.content:
    raise IoFailure('failed to read {}'.format(path))

  entry_type = de.get('Type', group=group) or TYPE_APPLICATION
  if entry_type not in SUPPORTED_TYPES:
    raise UnsupportedType(entry_type, path)

  # A hidden entry only serves to mask entries with the same ID in directories
  # of lower precedence so it may omit everything else.
  hidden = de.get('Hidden', group=group, type='boolean')
  name = de.get('Name', group=group, locale=True)
  if not (name or hidden):
    raise MissingRequiredField('Name', path)

  exe = de.get('Exec', group=group)
  if entry_type == TYPE_APPLICATION and not (exe.strip() or hidden):
    raise MissingRequiredField('Exec', path)

  actions = tuple(parse_desktop_actions(
    de,
    de.get('Actions', group=group, list=True),
    path
  ))

  metadata = dict(
    (k, v) for k, v in de.content[group].items()
    if k not in KNOWN_KEYS
  )

  return DesktopEntry(
    id=desktop_id,
    name=name,
    exec=exe,
    icon=de.get('Icon', group=group, locale=True) or None,
    comment=de.get('Comment', group=group, locale=True) or None,
    mime_types=tuple(nonempty_items(
      normalize_mimetype(m)
      for m in de.get('MimeType', group=group, list=True)
    )),
    categories=tuple(nonempty_items(de.get('Categories', group=group, list=True))),
    is_terminal=de.get('Terminal', group=group, type='boolean'),
    no_display=de.get('NoDisplay', group=group, type='boolean'),
    hidden=hidden,
    actions=actions,
    source_path=path,
    source_priority=source_priority,
    entry_type=entry_type,
    metadata=metadata,
  )



def parse_desktop_actions(de, action_ids, path):
  '''
  Iterate over the parsed action groups listed in the Actions key. Actions
  without a group or without a name or command are skipped.
  '''
  for action_id in nonempty_items(action_ids):
    group = DESKTOP_ACTION_GROUP_FMT.format(action_id)
    if not de.hasGroup(group):
      logging.debug('{}: skipping action without group [{}]'.format(path, group))
      continue
    name = de.get('Name', group=group, locale=True)
    exe = de.get('Exec', group=group)
    if not (name and exe):
      logging.debug('{}: skipping incomplete action [{}]'.format(path, group))
      continue
    yield DesktopAction(
      action_id=action_id,
      name=name,
      exec=exe,
      icon=de.get('Icon', group=group, locale=True) or None,
    )



def format_list(values):
  return ''.join('{};'.format(v) for v in values)



def format_desktop_entry(entry):
  '''
  Serialize a DesktopEntry to the text of a desktop file.
  '''
  lines = ['[{}]'.format(DESKTOP_ENTRY_GROUP)]
  lines.append('Type={}'.format(entry.entry_type))
  lines.append('Name={}'.format(entry.name))
  if entry.exec:
    lines.append('Exec={}'.format(entry.exec))
  if entry.icon:
    lines.append('Icon={}'.format(entry.icon))
  if entry.comment:
    lines.append('Comment={}'.format(entry.comment))
  if entry.mime_types:
    lines.append('MimeType={}'.format(format_list(entry.mime_types)))
  if entry.categories:
    lines.append('Categories={}'.format(format_list(entry.categories)))
  for key, flag in (
    ('Terminal', entry.is_terminal),
    ('NoDisplay', entry.no_display),
    ('Hidden', entry.hidden),
  ):
    if flag:
      lines.append('{}=true'.format(key))
  if entry.actions:
    lines.append('Actions={}'.format(format_list(a.action_id for a in entry.actions)))
  for key, value in entry.metadata.items():
    lines.append('{}={}'.format(key, value))

  for action in entry.actions:
    lines.append('')
    lines.append('[{}]'.format(DESKTOP_ACTION_GROUP_FMT.format(action.action_id)))
    lines.append('Name={}'.format(action.name))
    lines.append('Exec={}'.format(action.exec))
    if action.icon:
      lines.append('Icon={}'.format(action.icon))
  return '\n'.join(lines) + '\n'



################################# Entry Store ##################################

def scan_desktop_entries(search_roots):
  '''
  Scan the search roots, given in order of precedence, for desktop files.

  Returns a list of DesktopEntry objects and the number of files that were
  skipped because they could not be parsed. When several files share an ID,
  the first one found wins. Raises IoFailure if none of the roots can be read.
  '''
  entries = collections.OrderedDict()
  skipped = 0
  readable = 0

  for priority, root in enumerate(search_roots):
    if not (os.path.isdir(root) and os.access(root, os.R_OK | os.X_OK)):
      logging.debug('skipping unreadable search root {}'.format(root))
      continue
    readable += 1
    for dpath, fnames in walk_search_root(root):
      for fname in fnames:
        path = os.path.join(dpath, fname)
        de_id = desktop_id(root, path)
        if de_id in entries:
          logging.debug('{} is shadowed by {}'.format(path, entries[de_id].source_path))
          continue
        try:
          entries[de_id] = parse_desktop_entry(path, de_id, priority)
        except (MalformedEntry, IoFailure) as e:
          logging.debug('skipping {}: {}'.format(path, e))
          skipped += 1

  if not readable:
    raise IoFailure(
      'none of the search roots could be read: {}'.format(', '.join(search_roots))
    )
  logging.debug('found {:d} desktop entries, skipped {:d}'.format(len(entries), skipped))
  return list(entries.values()), skipped



################################ Cache Manager #################################

class CacheManager(object):
  '''
  Persist the output of scan_desktop_entries() between invocations. The cache
  is a single JSON file that is discarded whenever the fingerprint of the
  search roots changes.
  '''
  def __init__(self, path=None):
    self.path = path if path else default_cache_path()
    self.skipped = 0



  def fingerprint(self, search_roots):
    '''
    Summarize the modification times and sizes of all scanned directories and
    desktop files.
    '''
    h = hashlib.sha256()
    h.update('version {:d}\n'.format(CACHE_SCHEMA_VERSION).encode())
    for root in search_roots:
      h.update('root {}\n'.format(root).encode())
      if not os.path.isdir(root):
        h.update(b'missing\n')
        continue
      for dpath, fnames in walk_search_root(root):
        try:
          st = os.stat(dpath)
        except OSError:
          continue
        h.update('d {} {:d}\n'.format(os.path.relpath(dpath, root), st.st_mtime_ns).encode())
        for fname in fnames:
          try:
            st = os.stat(os.path.join(dpath, fname))
          except OSError:
            continue
          h.update('f {} {:d} {:d}\n'.format(fname, st.st_mtime_ns, st.st_size).encode())
    return h.hexdigest()



  def load(self, fingerprint):
    '''
    Load the cached entries and the number of files that the scan skipped.
    Raises CacheCorrupt if the cache is missing, unreadable or stale.
    '''
    try:
      with open(self.path, 'r', encoding='utf-8') as f:
        logging.debug('loading {}'.format(self.path))
        snapshot = json.load(f)
    except FileNotFoundError as e:
      raise CacheCorrupt('no cache at {}'.format(self.path)) from e
    except (OSError, ValueError) as e:
      raise CacheCorrupt('failed to load {}: {}'.format(self.path, e)) from e

    try:
      version = snapshot['version']
      stored = snapshot['fingerprint']
      skipped = snapshot['skipped']
      entries = snapshot['entries']
    except (KeyError, TypeError) as e:
      raise CacheCorrupt('invalid cache format') from e
    if version != CACHE_SCHEMA_VERSION:
      raise CacheCorrupt('cache version {} != {}'.format(version, CACHE_SCHEMA_VERSION))
    if stored != fingerprint:
      raise CacheCorrupt('cache is stale')
    if not (isinstance(entries, list) and isinstance(skipped, int)):
      raise CacheCorrupt('invalid cache format')
    return list(entry_from_dict(e) for e in entries), skipped



  def save(self, fingerprint, entries, skipped=0):
    '''
    Write the snapshot atomically. Raises PersistFailure.
    '''
    snapshot = {
      'version' : CACHE_SCHEMA_VERSION,
      'fingerprint' : fingerprint,
      'skipped' : skipped,
      'entries' : list(entry_to_dict(e) for e in entries),
    }
    atomic_write(self.path, json.dumps(snapshot))



  def get_or_build(self, search_roots, force_refresh=False):
    '''
    Return the desktop entries of the search roots and a boolean to indicate if
    they came from the cache. The number of skipped desktop files is kept in
    the skipped attribute either way.
    '''
    search_roots = list(search_roots)
    fingerprint = self.fingerprint(search_roots)
    if not force_refresh:
      try:
        entries, self.skipped = self.load(fingerprint)
      except CacheCorrupt as e:
        logging.debug('cache miss: {}'.format(e))
      else:
        logging.debug('cache hit: {}'.format(self.path))
        return entries, True

    entries, self.skipped = scan_desktop_entries(search_roots)
    if self.skipped:
      logging.warning(
        'skipped {:d} invalid desktop file(s), use --debug for details'.format(self.skipped)
      )
    try:
      self.save(fingerprint, entries, self.skipped)
    except PersistFailure as e:
      logging.warning(str(e))
    return entries, False



  def clear(self):
    '''
    Delete the cache.
    '''
    try:
      os.remove(self.path)
      logging.debug('removed {}'.format(self.path))
    except FileNotFoundError:
      pass



######################## Association file parsing ##############################

def parse_associations(lines):
  '''
  Parse lines of an association file into an ordered mapping of sections to
  ordered mappings of keys to lists of desktop file IDs.
  '''
  section = None
  associations = collections.OrderedDict()
  for line in lines:
    line = line.strip()
    if not line or line[0] == '#':
      continue
    elif line[0] == '[' and line[-1] == ']':
      section = line[1:-1]
      associations.setdefault(section, collections.OrderedDict())
    elif section is None:
      logging.warning('ignoring line outside of a section [{}]'.format(line))
    else:
      try:
        key, desktops = line.split('=', 1)
      except ValueError:
        logging.warning('failed to parse line [{}]'.format(line))
      else:
        key = key.rstrip()
        if section in ASSOCIATION_SECTIONS:
          key = normalize_mimetype(key)
        # The standard only supports desktop file names. Strip directory
        # components from the path to ensure that they are IDs.
        desktops = list(nonempty_items(
          os.path.basename(d.strip()) for d in desktops.split(';')
        ))
        if desktops:
          associations[section][key] = desktops
  return associations



def format_associations(assocs):
  '''
  Format associations as the text of an association file. Empty entries and
  sections are omitted.
  '''
  blocks = list()
  for section, entries in assocs.items():
    lines = list(
      '{}={}'.format(key, format_list(values))
      for key, values in sorted(entries.items())
      if values
    )
    if lines:
      blocks.append('[{}]\n{}\n'.format(section, '\n'.join(lines)))
  return '\n'.join(blocks)



class AssociationList(object):
  '''
  The associations of a single association file, i.e. of one precedence tier.
  '''
  def __init__(self, path=None, sections=None):
    self.path = path
    if sections is None:
      sections = collections.OrderedDict()
    self.sections = sections



  @classmethod
  def load(cls, path):
    '''
    Load an association file. A missing file is equivalent to an empty one.
    Raises IoFailure if the file exists but cannot be read.
    '''
    try:
      with open(path, 'r', encoding='utf-8', errors='replace') as f:
        logging.debug('loading {}'.format(path))
        return cls(path, parse_associations(f))
    except FileNotFoundError:
      return cls(path)
    except OSError as e:
      raise IoFailure('failed to read {}: {}'.format(path, e)) from e



  def get(self, section, mimetype):
    try:
      return list(self.sections[section][normalize_mimetype(mimetype)])
    except KeyError:
      return []



  @unique_items
  def handlers(self, mimetype):
    '''
    Iterate over the desktop IDs associated with the MIME-type in this file:
    the default applications followed by the added associations.
    '''
    yield from self.get(DEFAULT_APPLICATIONS_SECTION, mimetype)
    yield from self.get(ADDED_ASSOCIATIONS_SECTION, mimetype)



  def removed(self, mimetype):
    return self.get(REMOVED_ASSOCIATIONS_SECTION, mimetype)



  def matching_keys(self, pattern):
    '''
    The sorted MIME-types of the default applications and added associations
    that match a shell-style pattern.
    '''
    keys = set()
    for name in (DEFAULT_APPLICATIONS_SECTION, ADDED_ASSOCIATIONS_SECTION):
      keys.update(
        k for k in self.sections.get(name, ())
        if fnmatch.fnmatchcase(k, pattern)
      )
    return sorted(keys)



  def format(self):
    return format_associations(self.sections)



class MimeappsCache(object):
  '''
  Lazily loaded association files by path.
  '''
  def __init__(self):
    self.associations = dict()



  def clear(self):
    self.associations.clear()



  def __getitem__(self, path):
    try:
      return self.associations[path]
    except KeyError:
      try:
        assocs = AssociationList.load(path)
      except IoFailure as e:
        logging.warning(str(e))
        assocs = AssociationList(path)
      self.associations[path] = assocs
      return assocs



  def __delitem__(self, path):
    self.associations.pop(path, None)



############################## Association Index ###############################

def entry_to_candidate(entry, xdg_priority=None, is_default=False):
  return ResolvedCandidate(
    entry_id=entry.id,
    name=entry.name,
    exec=entry.exec,
    desktop_file_path=entry.source_path,
    icon=entry.icon,
    comment=entry.comment,
    is_xdg_associated=(xdg_priority is not None),
    xdg_priority=xdg_priority,
    is_default=is_default,
    action_id=None,
  )



def action_candidates(entry, candidate):
  '''
  Iterate over candidates for the actions of an entry. They inherit the
  association flags of the entry's own candidate but never the default flag.
  '''
  for action in entry.actions:
    yield candidate._replace(
      name='{} - {}'.format(entry.name, action.name),
      exec=action.exec,
      icon=(action.icon or entry.icon),
      is_default=False,
      action_id=action.action_id,
    )



class AssociationIndex(object):
  '''
  Map MIME-types to ranked candidates using the desktop entries and the
  association files. Entries are only referenced by ID.
  '''
  def __init__(self, entries, mimeapps_paths, mimeapps_cache=None):
    self.entries = collections.OrderedDict((e.id, e) for e in entries)
    self.mimeapps_paths = list(mimeapps_paths)
    self.mimeapps_cache = mimeapps_cache if mimeapps_cache else MimeappsCache()
    self.ids_by_mimetype = None



  def invalidate(self, path=None):
    '''
    Drop the loaded association files, or only the given one, so that the next
    resolution reloads them.
    '''
    if path is None:
      self.mimeapps_cache.clear()
    else:
      del self.mimeapps_cache[path]



  def association_lists(self):
    for path in self.mimeapps_paths:
      yield self.mimeapps_cache[path]



  def supporting_ids(self, mimetype):
    '''
    IDs of the entries that declare support for the MIME-type, in entry order.
    '''
    if self.ids_by_mimetype is None:
      self.ids_by_mimetype = collections.defaultdict(list)
      for entry in self.entries.values():
        for m in entry.mime_types:
          self.ids_by_mimetype[m].append(entry.id)
    return self.ids_by_mimetype.get(mimetype, [])



  def associated(self, mimetype):
    '''
    Collect the living associated entries of the MIME-type as (entry, tier
    index) pairs in order of precedence. IDs listed in a tier's removed
    associations are ignored in that tier and all following ones.

    Returns the list of pairs and the set of all IDs that were listed, living
    or not, including the removed ones.
    '''
    pairs = list()
    seen = set()
    removed = set()
    for priority, assocs in enumerate(self.association_lists()):
      removed.update(assocs.removed(mimetype))
      for de_id in assocs.handlers(mimetype):
        if de_id in seen or de_id in removed:
          continue
        seen.add(de_id)
        try:
          entry = self.entries[de_id]
        except KeyError:
          logging.debug('ignoring unknown desktop ID {} in {}'.format(de_id, assocs.path))
          continue
        if is_candidate(entry):
          pairs.append((entry, priority))
        else:
          logging.debug('ignoring hidden desktop ID {} in {}'.format(de_id, assocs.path))
    return pairs, seen | removed



  def resolve(self, mimetype, include_actions=False):
    '''
    Return the list of ResolvedCandidate objects for the MIME-type: the default
    handler, then the other associated entries by precedence, then the
    unassociated entries that support the MIME-type.
    '''
    mimetype = normalize_mimetype(mimetype)
    ranked = list()

    pairs, excluded = self.associated(mimetype)
    for entry, priority in pairs:
      ranked.append((entry, entry_to_candidate(
        entry,
        xdg_priority=priority,
        is_default=(not ranked)
      )))

    for de_id in self.supporting_ids(mimetype):
      if de_id in excluded:
        continue
      entry = self.entries[de_id]
      if is_candidate(entry):
        ranked.append((entry, entry_to_candidate(entry)))

    candidates = list()
    for entry, candidate in ranked:
      candidates.append(candidate)
      if include_actions:
        candidates.extend(action_candidates(entry, candidate))
    logging.debug('{}: {:d} candidate(s)'.format(mimetype, len(candidates)))
    return candidates



############################## Association Editor ##############################

class AssociationEditor(object):
  '''
  Modify the user's association file. The file is loaded on first use, all
  modifications are applied in memory and persist() writes the result back.
  '''
  UNLOADED = 'unloaded'
  LOADED = 'loaded'
  MUTATED = 'mutated'
  PERSISTED = 'persisted'

  def __init__(self, path):
    self.path = path
    self.assocs = None
    self.state = self.UNLOADED



  def load(self):
    self.assocs = AssociationList.load(self.path)
    self.state = self.LOADED
    return self



  def ensure_loaded(self):
    if self.state == self.UNLOADED:
      self.load()



  def mutated(self):
    self.state = self.MUTATED



  def handlers(self, mimetype):
    self.ensure_loaded()
    return list(self.assocs.handlers(mimetype))



  def targets(self, mimetype):
    '''
    Expand a MIME-type pattern such as "image/*" over the MIME-types of the
    default applications and added associations. A plain MIME-type is its own
    only target. Raises UnknownMimeType if a pattern matches nothing.
    '''
    self.ensure_loaded()
    mimetype = normalize_mimetype(mimetype)
    if not is_mimetype_pattern(mimetype):
      return [mimetype]
    matches = self.assocs.matching_keys(mimetype)
    if not matches:
      raise UnknownMimeType('no associated MIME-type matches {}'.format(mimetype))
    logging.debug('{} matches {}'.format(mimetype, ', '.join(matches)))
    return matches



  def set(self, mimetype, desktop):
    '''
    Make the desktop ID the only default application of the MIME-type.
    '''
    for m in self.targets(mimetype):
      section = self.assocs.sections.setdefault(
        DEFAULT_APPLICATIONS_SECTION,
        collections.OrderedDict()
      )
      if section.get(m) != [desktop]:
        section[m] = [desktop]
        self.mutated()



  def add(self, mimetype, desktop):
    '''
    Append the desktop ID to the default applications of the MIME-type unless
    it is already there.
    '''
    for m in self.targets(mimetype):
      section = self.assocs.sections.setdefault(
        DEFAULT_APPLICATIONS_SECTION,
        collections.OrderedDict()
      )
      desktops = section.setdefault(m, [])
      if desktop not in desktops:
        desktops.append(desktop)
        self.mutated()



  def remove(self, mimetype, desktop):
    '''
    Remove the desktop ID from the MIME-type's default applications and added
    associations. Keys without remaining IDs are dropped because the file
    format cannot express an empty list.
    '''
    for m in self.targets(mimetype):
      for name in (DEFAULT_APPLICATIONS_SECTION, ADDED_ASSOCIATIONS_SECTION):
        section = self.assocs.sections.get(name)
        if not section or desktop not in section.get(m, ()):
          continue
        section[m].remove(desktop)
        if not section[m]:
          del section[m]
        self.mutated()



  def unset(self, mimetype):
    '''
    Remove all default applications and added associations of the MIME-type.
    '''
    for m in self.targets(mimetype):
      for name in (DEFAULT_APPLICATIONS_SECTION, ADDED_ASSOCIATIONS_SECTION):
        section = self.assocs.sections.get(name)
        if section and m in section:
          del section[m]
          self.mutated()



  def persist(self):
    '''
    Write the associations back to the file. Raises PersistFailure, in which
    case the file on disk is left as it was.
    '''
    self.ensure_loaded()
    atomic_write(self.path, self.assocs.format())
    self.state = self.PERSISTED
    return self.assocs



#################################### OpenIt ####################################

class OpenIt(object):
  def __init__(
    self,
    search_roots=None,
    mimeapps_paths=None,
    user_mimeapps=None,
    cache_path=None,
    user=True,
    system=True,
    current_desktop=False,
    force_refresh=False,
    content_first=True,
    allow_unknown=False,
  ):
    if search_roots is None:
      search_roots = desktop_directories(user=user, system=system)
    if mimeapps_paths is None:
      mimeapps_paths = mimeapps_list_paths(user=user, system=system)
    if user_mimeapps is None:
      user_mimeapps = user_mimeapps_path(current_desktop=current_desktop)
    self.search_roots = list(search_roots)
    self.mimeapps_paths = list(mimeapps_paths)
    self.user_mimeapps = user_mimeapps
    self.cache = CacheManager(cache_path)
    self.force_refresh = force_refresh
    self.content_first = content_first
    self.allow_unknown = allow_unknown
    self.cache_hit = None
    self.reset()



  def reset(self):
    '''
    Forget loaded entries and associations.
    '''
    self._entries = None
    self._index = None



  @property
  def entries(self):
    if self._entries is None:
      self._entries, self.cache_hit = self.cache.get_or_build(
        self.search_roots,
        force_refresh=self.force_refresh
      )
      # Only the first load of a run is forced.
      self.force_refresh = False
    return self._entries



  @property
  def index(self):
    if self._index is None:
      self._index = AssociationIndex(self.entries, self.mimeapps_paths)
    return self._index



  def clear_cache(self):
    self.cache.clear()
    self.reset()



  def arg_to_mimetype(self, arg):
    return arg_to_mimetype(arg, content_first=self.content_first)



  def resolve(self, mimetype, include_actions=False):
    '''
    Return the ranked candidates for a MIME-type.
    '''
    return self.index.resolve(mimetype, include_actions=include_actions)



  def resolve_path(self, path, include_actions=False):
    '''
    Return the MIME-type of a path and its ranked candidates.
    '''
    mimetype = sniff_mime(path, content_first=self.content_first)
    return mimetype, self.resolve(mimetype, include_actions=include_actions)



  def check_desktop(self, desktop):
    '''
    Raise UnknownDesktopEntry if the desktop ID does not match a known desktop
    entry, unless unknown IDs are allowed.
    '''
    if desktop in self.index.entries:
      return
    if self.allow_unknown:
      logging.warning('{} does not match any known desktop entry'.format(desktop))
    else:
      raise UnknownDesktopEntry(desktop)



  def mutate(self, op, target, desktop=None):
    '''
    Apply one modification to the user's association file and persist it.
    The target may be a MIME-type, a MIME-type pattern such as "image/*", an
    existing path or a file extension. A pattern applies to every matching
    MIME-type in the user's file.

    Returns a list of (MIME-type, handlers) pairs with the resulting handlers
    of each modified MIME-type in the user's file.
    '''
    if op not in MUTATION_OPS:
      raise ValueError('unsupported operation: {}'.format(op))
    mimetype = self.arg_to_mimetype(target)

    editor = AssociationEditor(self.user_mimeapps)
    targets = editor.targets(mimetype)
    if op == 'unset':
      editor.unset(mimetype)
    else:
      if not desktop:
        raise ValueError('{} requires a desktop file'.format(op))
      desktop = ensure_desktop_name(desktop)
      if op != 'remove':
        self.check_desktop(desktop)
      getattr(editor, op)(mimetype, desktop)

    if editor.state == editor.MUTATED:
      editor.persist()
      if self._index is not None:
        self._index.invalidate(self.user_mimeapps)
    else:
      logging.debug('{} {} {}: nothing to do'.format(op, mimetype, desktop))
    return list((m, editor.handlers(m)) for m in targets)



################################# Command-line #################################

def candidate_marker(candidate):
  if candidate.is_default:
    return MARKER_DEFAULT
  elif candidate.is_xdg_associated:
    return MARKER_ASSOCIATED
  else:
    return MARKER_AVAILABLE



def format_candidate(candidate):
  '''
  Format a candidate as a single line of text output.
  '''
  de_id = candidate.entry_id
  if candidate.action_id:
    de_id = '{} {}'.format(de_id, candidate.action_id)
  return '  {} {}  {}'.format(candidate_marker(candidate), de_id, candidate.name)



def get_argparser():
  parser = argparse.ArgumentParser(
    description='Find the applications that open files and MIME-types and manage the associations.',
  )

  query_op_group = parser.add_argument_group(
    title='Query Operations',
    description='By default, the arguments are treated as paths, MIME-types or extensions and the matching applications are listed.',
  )
  query_op_group.add_argument(
    '--mimetype', action='store_true',
    help='Print the MIME-type of each argument.',
  )
  query_op_group.add_argument(
    '--mimeapps-list', action='store_true',
    help='Print the paths of existing association files in order of precedence.',
  )

  mod_op_group = parser.add_argument_group(
    title='Association Operations',
    description='Modify the user\'s association file.',
  )
  mod_op_group.add_argument(
    '--set', nargs=2, action='append', metavar=ASSOCIATION_MODIFICATION_METAVAR,
    help='Make the desktop file the default application. This option may be given multiple times.',
  )
  mod_op_group.add_argument(
    '--add', nargs=2, action='append', metavar=ASSOCIATION_MODIFICATION_METAVAR,
    help='Append the desktop file to the default applications. This option may be given multiple times.',
  )
  mod_op_group.add_argument(
    '--remove', nargs=2, action='append', metavar=ASSOCIATION_MODIFICATION_METAVAR,
    help='Remove the desktop file from the associations. This option may be given multiple times.',
  )
  mod_op_group.add_argument(
    '--unset', action='append', metavar=ASSOCIATION_MODIFICATION_METAVAR[0],
    help='Remove all associations. This option may be given multiple times.',
  )
  mod_op_group.add_argument(
    '--allow-unknown', action='store_true',
    help='Accept desktop files that do not match any installed desktop entry.',
  )

  conf_group = parser.add_argument_group(
    title='Configuration',
  )
  conf_group.add_argument(
    '--actions', action='store_true',
    help='Include desktop actions in the output.',
  )
  conf_group.add_argument(
    '--json', action='store_true',
    help='Print the candidates as JSON.',
  )
  conf_group.add_argument(
    '--clear-cache', action='store_true',
    help='Delete the desktop entry cache.',
  )
  conf_group.add_argument(
    '--refresh', action='store_true',
    help='Rescan the desktop entries even if the cache is current.',
  )
  conf_group.add_argument(
    '--current-desktop', action='store_true',
    help='Modify the association file of the current desktop ({}) instead of the general one.'.format(XDG_CURRENT_DESKTOP),
  )
  conf_group.add_argument(
    '--user', action='store_true',
    help='Only use user directories.',
  )
  conf_group.add_argument(
    '--system', action='store_true',
    help='Only use system directories.',
  )
  conf_group.add_argument(
    '--by-name', action='store_true',
    help='Determine MIME-types of files by name before content.',
  )
  conf_group.add_argument(
    '--use-default-args', action='store_true',
    help='Prepend the arguments in {}.'.format(default_arguments_path()),
  )
  conf_group.add_argument(
    '--debug', action='store_true',
    help='Log debugging messages.',
  )
  parser.add_argument('args', nargs='*', metavar='<arg>')
  return parser



def main(args=None):
  if args is None:
    args = sys.argv[1:]
  parser = get_argparser()
  pargs = parser.parse_args(args)

  if pargs.use_default_args:
    extra_args = default_arguments()
    if extra_args:
      logging.debug('prepending arguments: {}'.format(extra_args))
      args = extra_args + args
      pargs = parser.parse_args(args)

  openit = OpenIt(
    user=(not pargs.system),
    system=(not pargs.user),
    current_desktop=pargs.current_desktop,
    force_refresh=pargs.refresh,
    content_first=(not pargs.by_name),
    allow_unknown=pargs.allow_unknown,
  )

  if pargs.clear_cache:
    openit.clear_cache()

  # Resulting handlers in association file syntax, on stderr with --json.
  report = sys.stderr if pargs.json else sys.stdout
  for op in MUTATION_OPS:
    op_argss = getattr(pargs, op)
    if op_argss:
      for op_args in op_argss:
        if op == 'unset':
          results = openit.mutate(op, op_args)
        else:
          results = openit.mutate(op, op_args[0], op_args[1])
        for mimetype, desktops in results:
          print('{}={}'.format(mimetype, format_list(desktops)), file=report)

  if pargs.mimeapps_list:
    for path in openit.mimeapps_paths:
      if os.path.exists(path):
        print(path)

  elif pargs.mimetype:
    for arg in pargs.args:
      print(arg)
      print('  {}'.format(openit.arg_to_mimetype(arg)))

  elif pargs.args:
    results = list()
    for arg in pargs.args:
      mimetype = openit.arg_to_mimetype(arg)
      candidates = openit.resolve(mimetype, include_actions=pargs.actions)
      if not candidates:
        logging.warning('no application found for {} ({})'.format(arg, mimetype))
      results.append((arg, mimetype, candidates))

    if pargs.json:
      print(json.dumps(
        list(
          {
            'arg' : arg,
            'mimetype' : mimetype,
            'candidates' : list(c._asdict() for c in candidates),
          }
          for arg, mimetype, candidates in results
        ),
        indent=2
      ))
    else:
      for arg, mimetype, candidates in results:
        print('{} ({})'.format(arg, mimetype))
        for c in candidates:
          print(format_candidate(c))



def run_main(args=None):
  '''
  Run main() and turn errors into an exit status.
  '''
  try:
    main(args)
  except (KeyboardInterrupt, BrokenPipeError):
    pass
  except (Error, ValueError) as e:
    logging.error(str(e))
    sys.exit(1)



if __name__ == '__main__':
  logging.basicConfig(
    format='%(levelname)s: %(message)s',
    level=logging.DEBUG if ('--debug' in sys.argv[1:]) else logging.WARNING
  )
  run_main()
