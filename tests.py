import math
import random
import sys
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from scalargrad import (
    MLP,
    BorrowError,
    GraphError,
    Mode,
    ModeError,
    Neuron,
    Op,
    Value,
    configure,
    get_config,
    graph_stats,
    loss,
    topo_sort,
    use_mode,
)
from scalargrad.train import get_moons, main, train


def sanity_graph():
    x = Value.from_scalar(-4.0)
    z = 2 * x + 2 + x
    q = z.relu() + z * x
    h = (z * z).relu()
    y = h + q + q * x
    return x, y


def test_scalar():
    x = Value.from_scalar(4.0)
    assert x.val == 4.0
    assert x.grad == 0
    assert x.op is Op.INIT
    assert x.parents == ()

def test_add():
    z = Value.from_scalar(4.0) + Value.from_scalar(2.0)
    assert z.val == 6.0
    assert z.op is Op.ADD

def test_mul():
    assert (Value.from_scalar(2.0) * Value.from_scalar(6.0)).val == 12.0
    assert (Value.from_scalar(-2.0) * Value.from_scalar(6.0)).val == -12.0

def test_plain_numbers():
    x = Value.from_scalar(3.0)
    assert (x + 1).val == (1 + x).val == 4.0
    assert (x - 1).val == 2.0
    assert (1 - x).val == -2.0
    assert (x * 2).val == (2 * x).val == 6.0
    assert (x / 2).val == 1.5
    assert (6 / x).val == pytest.approx(2.0)
    assert (np.float64(2.0) * x).val == 6.0

def test_sanity_check():
    with use_mode('single'):
        x, y = sanity_graph()
        y.backward()
    # pytorch results for above
    assert y.val == -20.0
    assert x.grad == 46.0

def test_sanity_check_float32():
    with use_mode('single', 'float32'):
        x, y = sanity_graph()
        y.backward()
    assert x._cell._node.dtype is np.float32
    assert y.val == -20.0
    assert x.grad == 46.0

def test_plain_numbers_keep_graph_precision():
    with use_mode('single', 'float32'):
        x = Value.from_scalar(-4.0)
    for y in [2 * x, x * 2, x + 1.5, 1 - x, x / 4]:
        assert y._cell._node.dtype is np.float32
        assert type(y._cell._node.value) is np.float32
    y = 2 * x
    y.backward()
    node = x._cell._node
    assert type(node.grad) is np.float32
    assert x.grad == 2.0

def more_ops(a, b):
    c = a + b
    d = a * b + b**3
    c = c + (c + 1)
    c = c + (1 + c + (-a))
    d = d + (d * 2 + (b + a).relu())
    d = d + (3 * d + (b - a).relu())
    e = c - d
    f = e**2
    g = f / 2.0
    g = g + 10.0 / f
    return g

def test_more_ops():
    a, b = Value.from_scalar(-4.0), Value.from_scalar(2.0)
    g = more_ops(a, b)
    g.backward()
    # pytorch results for above
    assert g.val == pytest.approx(24.7040816327, abs=1e-6)
    assert a.grad == pytest.approx(138.8338192420, abs=1e-6)
    assert b.grad == pytest.approx(645.5772594752, abs=1e-6)

def test_more_ops_against_torch():
    torch = pytest.importorskip('torch')
    a, b = Value.from_scalar(-4.0), Value.from_scalar(2.0)
    g = more_ops(a, b)
    g.backward()
    at = torch.tensor([-4.0], dtype=torch.double, requires_grad=True)
    bt = torch.tensor([2.0], dtype=torch.double, requires_grad=True)
    gt = more_ops_torch(at, bt)
    gt.backward()
    assert g.val == pytest.approx(gt.item(), abs=1e-9)
    assert a.grad == pytest.approx(at.grad.item(), abs=1e-9)
    assert b.grad == pytest.approx(bt.grad.item(), abs=1e-9)

def more_ops_torch(a, b):
    c = a + b
    d = a * b + b**3
    c = c + (c + 1)
    c = c + (1 + c + (-a))
    d = d + (d * 2 + (b + a).relu())
    d = d + (3 * d + (b - a).relu())
    e = c - d
    f = e**2
    g = f / 2.0
    return g + 10.0 / f


def test_shared_operand_accumulates():
    x = Value.from_scalar(3.0)
    y = x * x
    assert y.parents == (x,)
    y.backward()
    assert x.grad == 6.0

    a = Value.from_scalar(5.0)
    s = a + a
    s.backward()
    assert a.grad == 2.0

def test_diamond():
    x = Value.from_scalar(2.0)
    u = x * 3
    v = x * x
    w = u + v
    w.backward()
    assert x.grad == 3 + 2 * 2
    assert u.grad == v.grad == 1

def test_fast():
    x = Value.from_scalar(3)
    y = x * x  # x^2
    z = y * y  # x^4
    t = z * z  # x^8
    t.backward()
    assert t.grad == 1
    assert z.grad == 2 * 3**4
    assert y.grad == 4 * 3**6
    assert x.grad == 8 * 3**7

def test_dot():
    us = [Value.from_scalar(i) for i in range(10)]
    vs = [Value.from_scalar(i) for i in range(10)]
    z = sum((u * v for u, v in zip(us, vs)), start=Value.from_scalar(0))
    assert z.val == sum(u.val * v.val for u, v in zip(us, vs))
    z.backward()
    for u, v in zip(us, vs):
        assert u.grad == v.val
        assert v.grad == u.val

def test_relu():
    x, y = Value.from_scalar(3), Value.from_scalar(-3)
    z = x.relu() + y.relu()
    z.backward()
    assert x.grad == 1
    assert y.grad == 0

def test_relu_at_zero():
    x = Value.from_scalar(0.0)
    y = x.relu()
    assert y.val == 0.0
    y.backward()
    assert x.grad == 0.0

def test_pow():
    x = Value.from_scalar(3.0)
    y = x**3
    y.backward()
    assert y.val == 27.0
    assert x.grad == 27.0
    assert y.op is Op.POW

def test_pow_exponent_must_be_plain():
    x = Value.from_scalar(3.0)
    with pytest.raises(TypeError):
        x ** Value.from_scalar(2.0)
    with pytest.raises(TypeError):
        2 ** x

def test_div_round_trip():
    for v in [3.7, -0.25, 1e-3, 42.0]:
        a = Value.from_scalar(v)
        y = a / a
        assert y.val == pytest.approx(1.0)
        y.backward()
        assert a.grad == pytest.approx(0.0, abs=1e-9)

def test_degenerate_numbers():
    assert math.isinf((Value.from_scalar(0.0) ** -1).val)
    assert math.isnan((Value.from_scalar(-8.0) ** (1 / 3)).val)
    y = Value.from_scalar(0.0) / Value.from_scalar(0.0)
    assert math.isnan(y.val)
    y.backward()

    x = Value.from_scalar(0.0)
    y = x ** -2
    y.backward()
    assert math.isinf(x.grad)

def test_op_labels():
    a, b = Value.from_scalar(1.0), Value.from_scalar(2.0)
    assert (a - b).op is Op.SUB
    assert (a / b).op is Op.DIV
    assert (-a).op is Op.NEG
    assert a.relu().op is Op.RELU

def test_composite_node_counts():
    a, b = Value.from_scalar(1.0), Value.from_scalar(2.0)
    # a - b is a + (b * -1)
    assert graph_stats(a - b) == {
        'nodes': 5, 'edges': 4, 'leaves': 3,
        'operations': {'init': 3, 'neg': 1, 'sub': 1},
    }
    # a / b is a * b**-1
    assert graph_stats(a / b) == {
        'nodes': 4, 'edges': 3, 'leaves': 2,
        'operations': {'init': 2, 'pow': 1, 'div': 1},
    }
    assert graph_stats(-a)['nodes'] == 3


def test_handles():
    x = Value.from_scalar(1.0)
    x2 = x.clone()
    other = Value.from_scalar(1.0)
    assert x2 == x and x2 is not x
    assert other != x
    assert len({x, x2, other}) == 2
    (x2 * 5).backward()
    assert x.grad == 5.0

def test_ids_are_unique():
    xs = [Value.from_scalar(0.0) for _ in range(100)]
    assert len({x.id for x in xs}) == 100

def test_zero_grad():
    x = Value.from_scalar(2.0)
    (x * x * x).backward()
    assert x.grad == 12.0
    x.zero_grad()
    assert x.grad == 0.0
    x.zero_grad()
    assert x.grad == 0.0

def test_apply_gradient_step():
    x = Value.from_scalar(1.0)
    (x * x).backward()
    x.apply_gradient_step(0.1)
    assert x.val == pytest.approx(0.8)
    assert x.grad == 2.0


def test_topological_order():
    _, y = sanity_graph()
    order = topo_sort(y)
    position = {v.id: i for i, v in enumerate(order)}
    assert len(position) == len(order)
    assert order[-1] == y
    assert not order[0].parents
    for v in order:
        for p in v.parents:
            assert position[p.id] < position[v.id]

def test_topological_order_matches_recursive_walk():
    def walk(v, visited, order):
        if v.id not in visited:
            visited.add(v.id)
            for p in v.parents:
                walk(p, visited, order)
            order.append(v)
        return order
    _, y = sanity_graph()
    assert topo_sort(y) == walk(y, set(), [])

def test_deep_chain():
    depth = sys.getrecursionlimit() * 3
    x = Value.from_scalar(1.0)
    y = x
    for _ in range(depth):
        y = y + 1.0
    y.backward()
    assert y.val == depth + 1
    assert x.grad == 1.0

def test_backward_on_leaf():
    x = Value.from_scalar(7.0)
    x.backward()
    assert x.grad == 1.0

def test_backward_twice_is_a_noop():
    a, b = Value.from_scalar(2.0), Value.from_scalar(3.0)
    y = a * b
    y.backward()
    y.backward()
    assert a.grad == 3.0
    assert b.grad == 2.0
    assert y.grad == 1.0


def test_borrow_conflicts():
    with use_mode('single'):
        x = Value.from_scalar(1.0)
        with x._cell.borrow_mut():
            with pytest.raises(BorrowError):
                x.val
            with pytest.raises(BorrowError):
                x * x
        with x._cell.borrow():
            assert x.val == 1.0
            with pytest.raises(BorrowError):
                x.zero_grad()
        assert x.val == 1.0

def test_nested_borrow_in_threaded_mode():
    with use_mode('threaded'):
        x = Value.from_scalar(1.0)
    with x._cell.borrow():
        with pytest.raises(BorrowError):
            x.val
        with pytest.raises(BorrowError):
            x.zero_grad()
    assert x.val == 1.0
    (x * x).backward()
    assert x.grad == 2.0

def test_missing_backward_rule():
    y = Value.from_scalar(1.0) + 1.0
    with y._cell.borrow_mut() as node:
        node.backward = None
    with pytest.raises(GraphError):
        y.backward()

def test_modes():
    prev = get_config()
    with use_mode('threaded', 'float32') as config:
        assert config.mode is Mode.THREADED
        assert config.dtype is np.float32
        t = Value.from_scalar(2.0)
    assert get_config() == prev
    assert t.mode is Mode.THREADED
    # plain numbers join the graph in its own mode
    assert (t * 3).mode is Mode.THREADED
    with use_mode('single'):
        s = Value.from_scalar(1.0)
    with pytest.raises(ModeError):
        t + s
    with pytest.raises(ModeError):
        configure(mode='bogus')
    with pytest.raises(ModeError):
        configure(dtype='float16')
    assert get_config() == prev

def test_threaded_sanity_check():
    with use_mode('threaded'):
        x, y = sanity_graph()
        y.backward()
    assert y.val == -20.0
    assert x.grad == 46.0

def test_threaded_forward():
    random.seed(0)
    xs = [[random.uniform(-2, 2), random.uniform(-2, 2)] for _ in range(32)]
    ys = [random.choice([-1.0, 1.0]) for _ in xs]
    with use_mode('threaded'):
        model = MLP([2, 8, 8, 1])
        with ThreadPoolExecutor(max_workers=8) as pool:
            preds = [out[0] for out in pool.map(model, xs)]
        total, _ = loss(model, preds, ys)
        model.zero_grad()
        total.backward()
        threaded_grads = [p.grad for p in model.parameters()]

        preds = [model(x)[0] for x in xs]
        total2, _ = loss(model, preds, ys)
        model.zero_grad()
        total2.backward()
    assert total.val == pytest.approx(total2.val)
    np.testing.assert_allclose(threaded_grads, [p.grad for p in model.parameters()])

def test_concurrent_backward_on_shared_leaf():
    with use_mode('threaded'):
        w = Value.from_scalar(2.0)
        roots = [w * float(i) for i in range(1, 9)]
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda r: r.backward(), roots))
    assert w.grad == sum(range(1, 9))


def test_neuron():
    n = Neuron(3, nonlinear=False)
    assert len(n.parameters()) == 4
    out = n([1.0, 1.0, 1.0])
    assert out.val == pytest.approx(sum(w.val for w in n.w))

def test_mlp():
    model = MLP([2, 16, 16, 1])
    assert len(model.parameters()) == 2*16 + 16 + 16*16 + 16 + 16 + 1
    out = model([0.5, -0.5])
    assert len(out) == 1
    text = repr(model)
    assert text.startswith('MLP:')
    assert text.count('ReLU') == 32
    assert text.count('Linear') == 1

def test_loss():
    model = MLP([2, 1])
    preds = [Value.from_scalar(2.0), Value.from_scalar(-3.0), Value.from_scalar(0.5)]
    total, acc = loss(model, preds, [1, -1, -1])
    reg = 1e-4 * sum(p.val**2 for p in model.parameters())
    assert total.val == pytest.approx(1.5 / 3 + reg)
    assert acc == pytest.approx(2 / 3)
    model.zero_grad()
    total.backward()
    assert preds[0].grad == 0.0
    assert preds[2].grad == pytest.approx(1 / 3)

def test_train_single():
    random.seed(0)
    X, y = get_moons(40, 0.1, seed=0)
    with use_mode('single'):
        model = MLP([2, 8, 1])
        history = train(model, X, y, epochs=5, seed=0, progress=False)
    assert len(history) == 5
    for total, acc in history:
        assert math.isfinite(total)
        assert 0 <= acc <= 1

def test_train_single_runs_without_a_pool(monkeypatch):
    def no_pool(*args, **kwargs):
        raise AssertionError('thread pool opened in single mode')
    monkeypatch.setattr('scalargrad.train.ThreadPoolExecutor', no_pool)
    random.seed(2)
    X, y = get_moons(10, 0.1, seed=2)
    with use_mode('single'):
        model = MLP([2, 4, 1])
        history = train(model, X, y, epochs=2, seed=2, progress=False)
    assert len(history) == 2

def test_train_threaded():
    random.seed(1)
    X, y = get_moons(20, 0.1, seed=1)
    with use_mode('threaded', 'float32'):
        model = MLP([2, 4, 1])
        history = train(model, X, y, epochs=3, workers=4, seed=1, progress=False)
    assert len(history) == 3
    assert all(math.isfinite(total) for total, _ in history)

def test_main(tmp_path):
    history = main(['-n', '20', '-e', '2', '--hidden', '4', '-s', '0', '-p', str(tmp_path)])
    assert len(history) == 2
    assert (tmp_path / 'moons.png').exists()
    assert (tmp_path / 'boundary.png').exists()
