#!/usr/bin/python
"""Supplies a command line interface for an object using
decorators and code introspection.
"""

__copyright__ = "Copyright © 2012 Johan Lindh"
__license__ = "MIT"
__author__ = "Johan Lindh <johan@linkdata.se>"

import sys, os
import inspect, re

QUEUED, DIRECT, FINAL = 0x01, 0x02, 0x10

class CommandLineError(Exception):
    """Base class for cli exceptions.
    """
    def __init__(self, text=None):
        Exception.__init__(self, text or '')
        self.strerror = text or ''
    def __str__(self):
        return self.strerror
    def __repr__(self):
        return '<' + self.__class__.__name__ + ' ' + str(self) + '>'

class ArgumentUnexpectedError(CommandLineError):
    """Raised when a command line argument did not have a
    suitable Handler."""
    pass

class ArgumentMissingError(CommandLineError):
    """Raised if a Command is called with missing parameters.
    """
    pass

def scriptname():
    return os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else 'cli'

def warning(text, name=None):
    """Print a warning diagnostic to stderr and carry on."""
    print('{0}: warning: {1}'.format(name or scriptname(), text), file=sys.stderr)

def error(text, name=None):
    """Print an error diagnostic to stderr. The caller decides the exit status."""
    print('{0}: error: {1}'.format(name or scriptname(), text), file=sys.stderr)

class Usage(object):
    """Generate usage text.
    """
    def __init__(self, obj, name=None):
        self.obj = obj
        self.name = name or scriptname()
        self.handlers = search(obj)
        self.options = sorted((h for h in self.handlers
            if h.flags & DIRECT), key=lambda h: h.sortkey)
        self.commands = sorted((h for h in self.handlers
            if h.flags & QUEUED), key=lambda h: h.sortkey)

    def __format__(self, format_spec=''):
        match = re.match(r'(\d+)?(\.\d+)?([nx])?$', format_spec)
        if match is None:
            raise ValueError('invalid format ' + repr(format_spec))
        tabsize = max(int(match.group(1) or 4), 1)
        maxcol = max(int(match.group(2)[1:] if match.group(2) else 72), tabsize*3)
        mode = match.group(3)
        if not mode:
            if os.getenv('TERM', '').startswith('xterm') and sys.stderr.isatty():
                mode = 'x'
            else:
                mode = 'n'

        if mode == 'x':
            bold = lambda s: '\033[1m' + s + '\033[0m'
            uline = lambda s: '\033[4m' + s + '\033[0m'
            wordlen = lambda w: len(w) - w.count('\033[') * 4
        else:
            bold = lambda s: s
            uline = lambda s: s
            wordlen = len

        output = []
        out_map = {'*': bold, '_': uline}
        out_rx = re.compile(r'([{0}])(.*?)\1'.format(
            re.escape(''.join(out_map))))
        out_fmt = lambda f, s: out_map[f](s) if s else f
        out_repl = lambda match: out_fmt(*match.groups())

        def out(margin, text):
            accum = []
            indent = ' ' * (margin * tabsize)
            def acc_flush():
                if accum:
                    output.append(indent + ' '.join(accum))
                    del accum[:]
                return len(indent)
            col = len(indent)
            text = out_rx.sub(out_repl, text)
            for word in text.split():
                wlen = wordlen(word)
                if col + wlen > maxcol and accum:
                    col = acc_flush()
                accum.append(word)
                col += wlen + 1
            acc_flush()

        def line(margin, *args):
            out(margin, ' '.join(''.join(flatten(args)).split()))

        def para(margin, lines):
            chunk = []
            for text in lines or ():
                if text.strip():
                    chunk.append(text)
                    continue
                if chunk:
                    line(margin, ' '.join(chunk))
                    output.append('')
                    del chunk[:]
            if chunk:
                line(margin, ' '.join(chunk))
            while output and not output[-1]:
                output.pop()

        def blank():
            if output and output[-1].startswith(' '):
                output.append('')

        def section(name):
            blank()
            line(0, '*', name, '*')

        scriptdocs = _cli_docs(type(self.obj))

        if scriptdocs:
            section('NAME')
            line(1, self.name, ' - ', scriptdocs[:1])

        section('SYNOPSIS')
        line(1, '*', self.name, '*',
            ' [_options_]' if self.options else '',
            ' _command_ [_args_ ...]' if self.commands else '')

        if scriptdocs and len(scriptdocs) > 1:
            section('DESCRIPTION')
            para(1, scriptdocs[1:])

        if self.options:
            section('OPTIONS')
            for handler in self.options:
                opts = sorted(handler.keys, key=len, reverse=True)
                blank()
                line(1, ', '.join('*' + o + '*' for o in opts),
                    handler.arglist())
                para(2, _cli_docs(handler.obj))

        if self.commands:
            section('COMMANDS')
            for handler in self.commands:
                blank()
                line(1, ', '.join('*' + k + '*' for k in sorted(handler.keys)),
                    handler.arglist())
                para(2, _cli_docs(handler.obj))

        return '\n'.join(output)

    def __str__(self):
        return self.__format__()

def decorate(set_flags, set_keys, set_docs, obj=None):
    """Decorate 'obj' as a CLI handler for the CLI keys 'set_keys'
    with the CLI flags 'set_flags'. If 'set_keys' is a string, it
    will be split. A CLI key is the exact command line word that
    selects the handler; there is no prefix or abbreviation matching.
    CLI flags are QUEUED, DIRECT and FINAL.
    """
    assert set_flags is None or isinstance(set_flags, int)
    assert set_docs is None or isinstance(set_docs, dict)
    if isinstance(set_keys, str):
        set_keys = set_keys.split()
    def decorator(obj):
        flags, keys, docs = _cli_get_data(obj) or (0, set(), dict())
        if set_keys:
            keys.update(set_keys)
        if set_docs:
            docs.update(set_docs)
        obj._cli_data = (flags | (set_flags or 0), keys, docs)
        return obj
    return decorator if obj is None else decorator(obj)

def final(obj=None):
    """Decorator marking a CLI handler as final. Everything that
    follows after it is taken as arguments to the handler.
    """
    return decorate(FINAL, None, None, obj)

def queued(keys, obj=None):
    """Decorator marking an object as a queued CLI handler.
    See 'decorate()' for details.
    """
    return decorate(QUEUED, keys, None, obj)

def direct(keys, obj=None):
    """Decorator marking an object as a direct CLI handler.
    See 'decorate()' for details.
    """
    return decorate(DIRECT, keys, None, obj)

def argtext(arg, text, obj=None):
    """Set the _text_ to use when generating usage help for
    _arg_. If _text_ is None or empty, the argument will
    not be documented in the usage help.
    """
    return decorate(0, None, {arg: text}, obj)

def parse(obj, argv):
    """Process argv using Handlers from obj and return a list of
    queued Commands. Direct handlers are called as they are found.
    """
    indata = list(argv)
    output = list()
    handlers = dict()
    for handler in search(obj):
        for k in handler.keys:
            if k in handlers:
                raise KeyError(
                    '{0}: {1!r} already handled by {2}'.format(
                        handler, k, handlers[k]))
            if (handler.flags & (QUEUED|DIRECT)) == 0:
                raise KeyError(
                    '{0}: {1!r} neither QUEUED nor DIRECT'.format(
                        handler, k))
            if (handler.flags & (QUEUED|DIRECT)) == (QUEUED|DIRECT):
                raise KeyError(
                    '{0}: {1!r} both QUEUED and DIRECT'.format(
                        handler, k))
            handlers[k] = handler

    while indata:
        arg = indata.pop(0)
        if arg is None:
            continue

        if isinstance(arg, Command):
            if not arg:
                raise ArgumentUnexpectedError(arg.error())
            elif arg.flags & DIRECT:
                inject = arg()
                if inject is not None:
                    indata[0:0] = (inject, None)
            elif arg.flags & QUEUED:
                output.append(arg)
            else:
                assert False
            continue

        if not isinstance(arg, str):
            if not hasattr(arg, '__iter__'):
                raise TypeError(
                    '{0!r}: type {1!r} unhandled by {2}.parse()'.format(
                        arg, type(arg).__name__, __name__))
            indata[0:0] = arg
            continue

        handler = handlers.get(arg)
        if handler is None:
            cmd = Command(0, None, arg)
        else:
            cmd = handler.command(indata, arg,
                None if handler.flags & FINAL else handlers)
        indata.insert(0, cmd)

    return output

class Command(object):
    """Represents a command line option or command found by parse().
    """
    def __init__(
            self, flags, key, text,
            func=None, arg_data=None,
            arg_list=None, arg_var=None, arg_defs=None,
            name=None
            ):
        self.flags = flags
        self.key = key
        self.text = text
        self.func = func
        self.arg_data = arg_data or list()
        self.arg_list = arg_list or tuple()
        self.arg_var = arg_var
        self.arg_defs = arg_defs or tuple()
        self.arg_need = len(self.arg_list) - len(self.arg_defs)
        self.name = name

    def missing(self):
        return self.arg_list[len(self.arg_data) : self.arg_need]

    def error(self):
        text = repr(self.text) if self.text else self.name
        if not self.name:
            return '{0}: not recognized'.format(text)
        if len(self.arg_data) < self.arg_need:
            missing = ', '.join(repr(n) for n in self.missing())
            return '{0}: missing {1}'.format(text, missing)
        return None

    def __bool__(self):
        return bool(self.name and len(self.arg_data) >= self.arg_need)

    def __str__(self):
        return str(self.text)

    def __call__(self, *args, **kwargs):
        posargs = tuple(self.arg_data) + tuple(args)
        needed = self.arg_list[len(posargs):self.arg_need]
        if needed:
            raise ArgumentMissingError('{0!r}: missing {1}'.format(
                self.text or self.name,
                ', '.join(repr(n) for n in needed)))
        try:
            return self.func(*posargs, **kwargs)
        except CommandLineError as err:
            if isinstance(self.key, str):
                err.strerror = self.key + ': ' + err.strerror
            raise

class Handler(object):
    """Produces Command instances.
    """
    def __init__(self, obj, data, parent, attr, text):
        self.obj = obj
        self.flags, self.keys, self.docs = data
        self.parent = parent
        self.attr = attr
        self.name = text or repr(obj)
        self.sortkey = max(self.keys, key=len) if self.keys else ''

    def argtext(self, arg):
        return (self.docs.get(arg, '_' + arg + '_') or '') if arg else ''

    def arglist(self):
        cmd = self.command()
        arg_list = cmd.arg_list[len(cmd.arg_data):]
        need = len(arg_list) - len(cmd.arg_defs)
        arg_need = [' ' + txt for txt in \
            (self.argtext(arg) for arg in arg_list[:need]) if txt]
        arg_opts = [' [' + txt for txt in \
            (self.argtext(arg) for arg in arg_list[need:]) if txt]
        if cmd.arg_var in self.docs:
            arg_var = ' ' + self.argtext(cmd.arg_var)
        elif cmd.arg_var:
            arg_var = ' [' + cmd.arg_var + ' ...]'
        else:
            arg_var = ''
        return ''.join(arg_need) + \
            ''.join(arg_opts) + \
            (']' * len(arg_opts)) + arg_var

    def __str__(self):
        return self.name

    def command(self, indata=None, key=None, stops=None):
        """Construct a Command object for this Handler using
        arguments from indata and return it.
        """
        if not callable(self.obj):
            raise TypeError('{0!r}: {1!r} is not callable'.format(
                self.name, self.obj))

        params = list(inspect.signature(self.obj).parameters.values())
        positional = [p for p in params
            if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)]
        arg_list = tuple(p.name for p in positional)
        arg_defs = tuple(p.default for p in positional
            if p.default is not p.empty)
        arg_var = None
        for p in params:
            if p.kind == p.VAR_POSITIONAL:
                arg_var = p.name
        arg_data = []
        if self.parent is not None:
            arg_data.append(self.parent)
        arg_first = len(arg_data)

        while indata and indata[0] is not None and \
            isinstance(indata[0], str) and \
            (arg_var or len(arg_data) < len(arg_list)) and \
            (not stops or indata[0] not in stops):
            arg_data.append(indata.pop(0))

        text_args = tuple((
            repr(s) if ' ' in s or not s else s
            for s in (str(a) for a in arg_data[arg_first:])
            ))
        text = ' '.join((key,) + text_args) if isinstance(key, str) \
            else ' '.join(text_args)
        name_args = ','.join((repr(a) for a in arg_data[arg_first:]))

        return Command(
            self.flags, key, text,
            self.obj, arg_data,
            arg_list, arg_var, arg_defs,
            self.name + '(' + name_args + ')'
            )

def _cli_get_data(obj):
    return getattr(obj, '_cli_data', None)

def _cli_docs(obj):
    docs = getattr(obj, '__doc__', None)
    return inspect.cleandoc(docs).splitlines() if docs else None

def flatten(iterable):
    for element in iterable:
        if isinstance(element, str):
            yield element
        else:
            try:
                subiterable = iter(element)
            except TypeError:
                yield element
            else:
                for subelement in flatten(subiterable):
                    yield subelement

def search(obj):
    """Return a list of Handler instances for the CLI methods of obj.
    Handlers found on a subclass hide those of the same name in a base.
    """
    result = []
    seen = set()
    for klass in type(obj).__mro__:
        for key, value in vars(klass).items():
            if key.startswith('__') or key in seen:
                continue
            seen.add(key)
            data = _cli_get_data(value)
            if data:
                result.append(Handler(value, data, obj, key,
                    type(obj).__name__ + '.' + key))
    return result
