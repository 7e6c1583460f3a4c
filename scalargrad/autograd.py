"""Reverse-mode autodiff over scalar values.

Every arithmetic operation on a `Value` creates a new node that remembers its
parents and a one-shot `push_grad` rule. `Value.backward()` orders the graph
topologically and runs each rule once, in reverse.

Nodes live inside a cell that controls access. `Mode.SINGLE` uses a
borrow-checked cell (one writer or many readers, violations raise
`BorrowError`). `Mode.THREADED` puts a lock on each node so forward passes can
be built from several threads at once.
"""
import enum
import itertools
import logging
import numbers
import os
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)


class AutogradError(RuntimeError):
    pass

class BorrowError(AutogradError):
    pass

class GraphError(AutogradError):
    pass

class ModeError(AutogradError):
    pass


class Op(enum.Enum):
    INIT = 'init'
    ADD = '+'
    SUB = '-'
    MUL = '*'
    NEG = 'neg'
    DIV = '/'
    POW = '**'
    RELU = 'relu'


class Mode(enum.Enum):
    SINGLE = 'single'
    THREADED = 'threaded'


DTYPES = {'float64': np.float64, 'float32': np.float32}


@dataclass(frozen=True)
class Config:
    mode: Mode = Mode.SINGLE
    dtype: type = np.float64


def _parse_mode(mode):
    if isinstance(mode, Mode):
        return mode
    try:
        return Mode(mode)
    except ValueError:
        raise ModeError(f'unknown mode {mode!r}, expected one of {[m.value for m in Mode]}') from None

def _parse_dtype(dtype):
    if dtype in DTYPES.values():
        return dtype
    try:
        return DTYPES[dtype]
    except (KeyError, TypeError):
        raise ModeError(f'unknown dtype {dtype!r}, expected one of {list(DTYPES)}') from None


_config = Config(_parse_mode(os.environ.get('SCALARGRAD_MODE', 'single')),
                 _parse_dtype(os.environ.get('SCALARGRAD_DTYPE', 'float64')))

def get_config():
    return _config

def configure(mode=None, dtype=None):
    """Select the cell type and scalar dtype used for new leaves."""
    global _config
    _config = Config(_config.mode if mode is None else _parse_mode(mode),
                     _config.dtype if dtype is None else _parse_dtype(dtype))
    return _config

@contextmanager
def use_mode(mode=None, dtype=None):
    """
    Temporarily switch configuration:
        with use_mode('threaded', 'float32'):
            ... build graph ...
    """
    global _config
    prev = _config
    try:
        yield configure(mode, dtype)
    finally:
        _config = prev


_ids = itertools.count(1)
_id_lock = threading.Lock()

def _next_id():
    with _id_lock:
        return next(_ids)


class Node:
    __slots__ = ('id', 'value', 'grad', 'dtype', 'op', 'parents', 'backward', 'spent')

    def __init__(self, value, parents=(), op=Op.INIT, dtype=np.float64):
        self.id = _next_id()
        self.dtype = dtype
        self.value = dtype(value)
        self.grad = dtype(0)
        self.op = op
        self.parents = parents
        self.backward = None
        # True once the backward rule has been consumed
        self.spent = False

    def __repr__(self):
        return f'id: {self.id}, data: {self.value}, grad: {self.grad}, op: {self.op.name}'


class RefCell:
    """Single-threaded cell: any number of shared borrows, or one exclusive borrow."""
    mode = Mode.SINGLE
    __slots__ = ('id', '_node', '_borrows')

    def __init__(self, node):
        self.id = node.id
        self._node = node
        self._borrows = 0  # -1 while exclusively borrowed

    @contextmanager
    def borrow(self):
        if self._borrows < 0:
            raise BorrowError(f'already mutably borrowed: node {self.id}')
        self._borrows += 1
        try:
            yield self._node
        finally:
            self._borrows -= 1

    @contextmanager
    def borrow_mut(self):
        if self._borrows:
            raise BorrowError(f'already borrowed: node {self.id}')
        self._borrows = -1
        try:
            yield self._node
        finally:
            self._borrows = 0


class LockCell:
    """Cell guarded by a mutex. A nested borrow from the same thread raises BorrowError."""
    mode = Mode.THREADED
    __slots__ = ('id', '_node', '_lock', '_owner')

    def __init__(self, node):
        self.id = node.id
        self._node = node
        self._lock = threading.Lock()
        self._owner = None

    @contextmanager
    def borrow_mut(self):
        me = threading.get_ident()
        # re-acquiring from the holding thread would deadlock
        if self._owner == me:
            raise BorrowError(f'already borrowed by this thread: node {self.id}')
        with self._lock:
            self._owner = me
            try:
                yield self._node
            finally:
                self._owner = None

    borrow = borrow_mut


CELLS = {Mode.SINGLE: RefCell, Mode.THREADED: LockCell}

# Serialises backward passes. Graphs may share parameter leaves.
_backward_lock = threading.Lock()


class Value:
    """
    Shared handle to a Node. Copies of a handle (see `clone`) point at the
    same node, and equality and hashing go by node id, never by value.
    """
    __slots__ = ('_cell', 'id')
    # numpy scalars on the left defer to our reflected operators
    __array_ufunc__ = None

    def __init__(self, cell):
        self._cell = cell
        self.id = cell.id

    @classmethod
    def from_scalar(cls, value):
        return cls._leaf(value, CELLS[_config.mode])

    @classmethod
    def _leaf(cls, value, cell_type, dtype=None):
        return cls(cell_type(Node(value, dtype=dtype or _config.dtype)))

    def clone(self):
        return Value(self._cell)

    @property
    def mode(self):
        return self._cell.mode

    @property
    def val(self):
        with self._cell.borrow() as node:
            return float(node.value)

    @property
    def grad(self):
        with self._cell.borrow() as node:
            return float(node.grad)

    @property
    def op(self):
        with self._cell.borrow() as node:
            return node.op

    @property
    def parents(self):
        with self._cell.borrow() as node:
            return node.parents

    def zero_grad(self):
        with self._cell.borrow_mut() as node:
            node.grad = node.dtype(0)

    def apply_gradient_step(self, lr):
        with self._cell.borrow_mut() as node:
            node.value = node.dtype(node.value - lr * node.grad)

    def backward(self):
        """
        Seed this node's gradient with 1 and run every reachable backward
        rule once, consumers before their parents. Running it again on the
        same graph only re-seeds the root, since the rules are spent.
        """
        with _backward_lock:
            order = topo_sort(self)
            logger.debug('topological order: %d nodes', len(order))
            with self._cell.borrow_mut() as node:
                node.grad = node.dtype(1)
            for v in reversed(order):
                with v._cell.borrow_mut() as node:
                    push_grad, node.backward = node.backward, None
                    if push_grad is None and node.parents and not node.spent:
                        raise GraphError(f'non-leaf node has no backward rule: {node!r}')
                    if push_grad is not None:
                        node.spent = True
                    grad = node.grad
                    logger.debug('backward %r', node)
                if push_grad is not None:
                    push_grad(grad)

    def __eq__(self, other):
        return isinstance(other, Value) and self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def __float__(self):
        return self.val

    def __repr__(self):
        with self._cell.borrow() as node:
            return f'Value({node!r})'


def _operands(*args):
    kinds = {type(x._cell) for x in args if isinstance(x, Value)}
    if len(kinds) > 1:
        raise ModeError('operands come from graphs built in different modes')
    kind = kinds.pop() if kinds else CELLS[_config.mode]
    # plain numbers take the precision of the graph they join
    dtype = next((type(_read(x)) for x in args if isinstance(x, Value)), None)
    return [x if isinstance(x, Value) else Value._leaf(x, kind, dtype) for x in args], kind

def _read(v):
    with v._cell.borrow() as node:
        return node.value

def _accumulate(v, grad):
    with v._cell.borrow_mut() as node:
        node.grad = node.dtype(node.grad + grad)

def _result(value, parents, op, push_grad, kind):
    # x*x has a single parent entry; its rule still pushes both contributions
    node = Node(value, tuple(dict.fromkeys(parents)), op, type(_read(parents[0])))
    node.backward = push_grad
    return Value(kind(node))

def _relabel(v, op):
    with v._cell.borrow_mut() as node:
        node.op = op
    return v


def add(a, b):
    (a, b), kind = _operands(a, b)
    av, bv = _read(a), _read(b)
    def push_grad(grad):
        _accumulate(a, grad)
        _accumulate(b, grad)
    with np.errstate(over='ignore', invalid='ignore'):
        return _result(av + bv, (a, b), Op.ADD, push_grad, kind)

def mul(a, b):
    (a, b), kind = _operands(a, b)
    av, bv = _read(a), _read(b)
    def push_grad(grad):
        with np.errstate(over='ignore', invalid='ignore'):
            _accumulate(a, bv * grad)
            _accumulate(b, av * grad)
    with np.errstate(over='ignore', invalid='ignore'):
        return _result(av * bv, (a, b), Op.MUL, push_grad, kind)

def pow(a, p):
    if not isinstance(p, numbers.Real):
        raise TypeError(f'exponent must be a plain real number, got {type(p).__name__}')
    p = float(p)
    (a,), kind = _operands(a)
    av = _read(a)
    def push_grad(grad):
        with np.errstate(all='ignore'):
            _accumulate(a, p * av ** (p - 1) * grad)
    with np.errstate(all='ignore'):
        return _result(av ** p, (a,), Op.POW, push_grad, kind)

def relu(a):
    (a,), kind = _operands(a)
    av = _read(a)
    out = type(av)(0) if av < 0 else av
    def push_grad(grad):
        # gated on the output, so the gradient at exactly 0 is 0
        _accumulate(a, grad if out > 0 else 0)
    return _result(out, (a,), Op.RELU, push_grad, kind)

def neg(a):
    return _relabel(mul(a, -1.0), Op.NEG)

def sub(a, b):
    return _relabel(add(a, neg(b)), Op.SUB)

def div(a, b):
    return _relabel(mul(a, pow(b, -1.0)), Op.DIV)


Value.__add__ = add
Value.__radd__ = lambda self, other: add(other, self)
Value.__sub__ = sub
Value.__rsub__ = lambda self, other: sub(other, self)
Value.__mul__ = mul
Value.__rmul__ = lambda self, other: mul(other, self)
Value.__truediv__ = div
Value.__rtruediv__ = lambda self, other: div(other, self)
Value.__neg__ = neg
Value.__pow__ = pow
Value.relu = relu


def topo_sort(root):
    """
    Post-order DFS over parents, each node once. Every node comes after all of
    its parents. Uses an explicit stack but yields the same order as the
    recursive walk.
    """
    order, visited = [], set()
    stack = [(root, False)]
    while stack:
        v, expanded = stack.pop()
        if expanded:
            order.append(v)
            continue
        if v.id in visited:
            continue
        visited.add(v.id)
        with v._cell.borrow() as node:
            parents = node.parents
        stack.append((v, True))
        stack.extend((p, False) for p in reversed(parents))
    return order


def graph_stats(root):
    order = topo_sort(root)
    parents = [v.parents for v in order]
    return {
        'nodes': len(order),
        'edges': sum(len(ps) for ps in parents),
        'leaves': sum(1 for ps in parents if not ps),
        'operations': dict(Counter(v.op.name.lower() for v in order)),
    }
