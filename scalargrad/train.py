import argparse
import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext

import tqdm
from sklearn import datasets, utils

from .autograd import Mode, use_mode
from .nn import MLP, loss

logger = logging.getLogger(__name__)


def get_moons(n_samples=100, noise=0.1, seed=None):
    X, y = datasets.make_moons(n_samples=n_samples, noise=noise, random_state=seed)
    # labels in {-1, 1} for the max-margin loss
    return X, y * 2 - 1


def train(model, X, y, epochs=100, workers=None, seed=None, progress=True):
    """
    Full-batch gradient descent with a linearly decaying learning rate.
    In threaded mode each sample's forward pass runs on the thread pool;
    the per-sample graphs only meet in the loss, which gets a single
    backward pass. Returns [(loss, accuracy)] per epoch.
    """
    threaded = model.parameters()[0].mode is Mode.THREADED
    history = []
    pool = ThreadPoolExecutor(max_workers=workers) if threaded else nullcontext()
    with pool, tqdm.tqdm(range(epochs), disable=not progress) as pb:
        mapper = pool.map if threaded else map
        for epoch in pb:
            start = time.time()
            X, y = utils.shuffle(X, y, random_state=None if seed is None else seed + epoch)
            preds = [out[0] for out in mapper(model, X)]
            total_loss, acc = loss(model, preds, y)

            model.zero_grad()
            total_loss.backward()
            lr = 1.0 - 0.9 * epoch / epochs
            model.apply_gradient_step(lr)

            history.append((total_loss.val, acc))
            pb.set_description(
                    f'Loss: {total_loss.val:.6f}, '
                    f'Acc: {acc:.2%}, '
                    f'Time: {(time.time() - start) * 1000:.0f}ms')
            logger.info('epoch %d: loss %.6f, accuracy %.4f, lr %.3f', epoch, total_loss.val, acc, lr)
    return history


def main(argv=None):
    parser = argparse.ArgumentParser(description='Train an MLP on the moons dataset')
    parser.add_argument('-n', '--samples', type=int, default=100)
    parser.add_argument('--noise', type=float, default=0.1)
    parser.add_argument('-e', '--epochs', type=int, default=100)
    parser.add_argument('--hidden', type=int, nargs='*', default=[16, 16])
    parser.add_argument('-w', '--workers', type=int, default=None)
    parser.add_argument('-m', '--mode', choices=[m.value for m in Mode], default='threaded')
    parser.add_argument('--dtype', choices=['float32', 'float64'], default='float32')
    parser.add_argument('-s', '--seed', type=int, default=None)
    parser.add_argument('-p', '--plot', metavar='DIR', help='write charts into DIR')
    parser.add_argument('-v', '--verbose', action='count', default=0)
    args = parser.parse_args(argv)

    logging.basicConfig(level=[logging.WARNING, logging.INFO, logging.DEBUG][min(args.verbose, 2)])
    random.seed(args.seed)

    X, y = get_moons(args.samples, args.noise, args.seed)
    if args.plot:
        from . import plotting
        plotting.draw_chart(X, (y + 1) / 2, f'{args.plot}/moons.png')

    with use_mode(args.mode, args.dtype):
        model = MLP([X.shape[1], *args.hidden, 1])
        print(model)
        print(f'Number of parameters: {len(model.parameters())}')
        history = train(model, X, y, args.epochs, args.workers, args.seed)

    if args.plot:
        plotting.draw_decision_boundary(model, X, y, f'{args.plot}/boundary.png')
    return history


if __name__ == '__main__':
    main()
