import os

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np


def _save(fig, path):
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    fig.savefig(path, dpi=96)
    plt.close(fig)


def draw_chart(X, y, path='plots/moons.png'):
    """Scatter the moons dataset, coloured by label."""
    fig, ax = plt.subplots(figsize=(6.4, 4.8))
    ax.scatter(X[:, 0], X[:, 1], c=y, s=9, cmap=plt.cm.viridis)
    ax.set_xlim(-2, 2)
    ax.set_ylim(-2, 2)
    ax.set_title('moons')
    _save(fig, path)


def draw_decision_boundary(model, X, y, path='plots/boundary.png', h=0.25):
    x_min, x_max = X[:, 0].min() - 1, X[:, 0].max() + 1
    y_min, y_max = X[:, 1].min() - 1, X[:, 1].max() + 1
    xx, yy = np.meshgrid(np.arange(x_min, x_max, h), np.arange(y_min, y_max, h))
    Xmesh = np.c_[xx.ravel(), yy.ravel()]
    Z = np.array([model(row)[0].val for row in Xmesh])
    Z = Z.reshape(xx.shape)

    fig, ax = plt.subplots()
    ax.contourf(xx, yy, Z, cmap=plt.cm.Spectral, alpha=0.8)
    ax.scatter(X[:, 0], X[:, 1], c=y, s=40, cmap=plt.cm.Spectral)
    ax.set_xlim(xx.min(), xx.max())
    ax.set_ylim(yy.min(), yy.max())
    _save(fig, path)
