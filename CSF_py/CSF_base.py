from __future__ import annotations
import sys
import numpy as np
import torch
from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple, Iterable, Union, IO

ArrayLike = Union[np.ndarray, torch.Tensor, float, int]


class ShapeMismatchError(ValueError):
    """输入数组的批长度既不是 1 也不与其他输入一致"""


class InvalidPhysicalInputError(ValueError):
    """空间频率、面积或背景 LMS 出现非正值"""


class CSFBase(ABC):
    """
    Spatio-chromatic CSF 模型的基类（Python 版）
    - par: 参数（嵌套 dict / list / 标量 / 一维向量）
    - 所有计算既可以用 numpy，也可以用 torch（任一输入为 Tensor 时走 torch）
    """

    # D65 灰色背景的 LMS（CIE 2006），已归一化到 L+M=1
    lms_d65_gray = np.array([0.6991, 0.3009, 0.0198], dtype=float)

    def __init__(self):
        self.par: Dict[str, Any] = {}

    # ------- 抽象接口 -------
    @abstractmethod
    def short_name(self) -> str:
        """返回简短名称（可用于文件名等）"""
        raise NotImplementedError

    def full_name(self) -> str:
        """可被子类覆盖；默认等于 short_name"""
        return self.short_name()

    # ------- 训练辅助：参数向量 <-> 结构 -------
    def set_pars(self, pars_vector: ArrayLike):
        """按给定向量更新 self.par（参数个数必须一致）。"""
        assert self.par, "self.par 必须先初始化（例如 get_default_par）"
        pars_vector = np.asarray(pars_vector, dtype=float).ravel()
        n_expected = self.struct2param(self.par).size
        if pars_vector.size != n_expected:
            raise ValueError(
                f"参数向量长度为 {pars_vector.size}，模型需要 {n_expected} 个参数"
            )
        self.par, _ = self.param2struct(self.par, pars_vector)
        return self

    def get_pars(self) -> np.ndarray:
        """把 self.par 展平成向量。"""
        return self.struct2param(self.par)

    # ------- 数组后端 -------
    @staticmethod
    def array_module(*arrays):
        """任一输入是 torch.Tensor 时返回 torch，否则返回 numpy"""
        for a in arrays:
            if isinstance(a, torch.Tensor):
                return torch
        return np

    @staticmethod
    def as_array(X: ArrayLike, like=None):
        """
        转成浮点数组。like 为 Tensor 时，转成与其相同 device/dtype 的 Tensor
        （整型 Tensor 用 float64）。
        """
        if isinstance(like, torch.Tensor):
            dtype = like.dtype if like.is_floating_point() else torch.float64
            return torch.as_tensor(X, dtype=dtype, device=like.device)
        if isinstance(X, torch.Tensor):
            return X if X.is_floating_point() else X.double()
        return np.asarray(X, dtype=float)

    @staticmethod
    def first_tensor(*arrays):
        for a in arrays:
            if isinstance(a, torch.Tensor):
                return a
        return None

    # ------- 批尺寸 -------
    @staticmethod
    def flatten_batch(X):
        """标量/单元素 -> 0 维；其余（包括 MATLAB 风格的列向量）-> 一维 (N,)"""
        n = X.numel() if isinstance(X, torch.Tensor) else X.size
        if n == 1:
            return X.reshape(())
        return X.reshape(-1)

    @staticmethod
    def flatten_lms(X, name: str):
        """(3,) / (1,3) -> (3,)；(N,3) 保持不变；末维必须为 3"""
        if X.ndim == 0 or X.shape[-1] != 3:
            raise ShapeMismatchError(f"'{name}' 的最后一维必须为 3，实际形状为 {tuple(X.shape)}")
        X = X.reshape(-1, 3)
        if X.shape[0] == 1:
            return X.reshape(3)
        return X

    @staticmethod
    def batch_length(X, color_dim: bool = False) -> int:
        shape = tuple(X.shape[:-1]) if color_dim else tuple(X.shape)
        return int(np.prod(shape)) if shape else 1

    @classmethod
    def check_batch(cls, **named) -> int:
        """
        所有输入的批长度必须为 1 或同一个 N，否则抛出 ShapeMismatchError。
        键名以 'LMS' 开头的输入带有颜色维（末维 = 3）。
        返回 N。
        """
        lengths = {
            name: cls.batch_length(X, color_dim=name.startswith("LMS"))
            for name, X in named.items()
        }
        # 长度为 1 的输入可以广播；其余输入（包括空批 N=0）长度必须相同
        batch = [n for n in lengths.values() if n != 1]
        N = batch[0] if batch else 1
        for name, n in lengths.items():
            if n != 1 and n != N:
                raise ShapeMismatchError(
                    f"参数 '{name}' 的长度 {n} 与批长度 {N} 不一致（只允许 1 或 {N}）"
                )
        return N

    @staticmethod
    def check_positive(**named):
        """频率、面积、背景 LMS 必须为正（NaN 同样拒绝），否则模型无定义"""
        for name, X in named.items():
            if bool((~(X > 0)).any()):
                raise InvalidPhysicalInputError(f"'{name}' 必须全部为正值")

    # ------- 输出参数（便于粘贴到 get_default_par） -------
    def print(self, fh: IO[str] = None):
        """把 self.par 以可复制格式打印到文件句柄 fh"""
        if fh is None:
            fh = sys.stdout
        self.print_struct(fh, "p.", self.par)

    def print_struct(self, fh: IO[str], struct_name: str, s: Dict[str, Any]):
        """递归打印 dict（跳过 cm/ds）"""
        skip = {"cm", "ds"}
        for k, v in s.items():
            if k in skip:
                continue
            if isinstance(v, dict):
                self.print_struct(fh, struct_name + k + ".", v)
            else:
                fh.write(f"\t{struct_name}{k} = ")
                self.print_vector(fh, np.asarray(v))
                fh.write(";\n")

    # ------- 静态工具 -------
    @staticmethod
    def last_dim(X: ArrayLike, d: int):
        """
        取“最后一维”的第 d 个元素（MATLAB 的 1-based 下标）。
        numpy 与 torch 均可用。
        """
        return X[..., d - 1]

    @staticmethod
    def param2struct(s: Any, pars_vector: np.ndarray) -> Tuple[Any, int]:
        """
        把参数向量写回到与 s 同构的结构（深度优先：dict 按键顺序，list 按下标）。
        返回 (更新后的结构, 已消耗的元素个数)
        叶子节点是标量或一维向量；向量长度决定消耗个数。
        """
        pars_vector = np.asarray(pars_vector, dtype=float).ravel()

        if isinstance(s, dict):
            out = {}
            pos = 0
            for k, v in s.items():
                out[k], used = CSFBase.param2struct(v, pars_vector[pos:])
                pos += used
            return out, pos

        if isinstance(s, list):
            out = []
            pos = 0
            for v in s:
                sub, used = CSFBase.param2struct(v, pars_vector[pos:])
                out.append(sub)
                pos += used
            return out, pos

        v = np.asarray(s, dtype=float)
        N = v.size
        if pars_vector.size < N:
            raise ValueError("参数向量过短，无法填满参数结构")
        leaf = pars_vector[:N].reshape(v.shape)
        return (float(leaf) if leaf.ndim == 0 else leaf.copy()), N

    @staticmethod
    def struct2param(s: Any) -> np.ndarray:
        """把嵌套 dict/list 展平成一维向量（深度优先）。"""
        if isinstance(s, dict):
            parts = [CSFBase.struct2param(v) for v in s.values()]
        elif isinstance(s, list):
            parts = [CSFBase.struct2param(v) for v in s]
        else:
            return np.asarray(s, dtype=float).ravel()
        if not parts:
            return np.array([], dtype=float)
        return np.concatenate(parts).astype(float)

    # ------- 亮度依赖函数族 -------
    # 系数个数 -> 曲线形式
    LUM_DEP_CONSTANT = 1
    LUM_DEP_POWER = 2
    LUM_DEP_SATURATING = 3
    LUM_DEP_BANDPASS = 5

    @staticmethod
    def get_lum_dep(pars: Iterable[float], L: ArrayLike):
        """
        随亮度变化的参数，曲线形式由系数个数决定：
          len=1: 常数 v = p0
          len=2: v = p1*L^p0
          len=3: v = p0*(1+p1/L)^(-p2)
          len=5: v = p0*(1+p1/L)^(-p2) * (1-(1+p3/L)^(-p4))
        L 可以是 numpy 数组或 torch.Tensor，返回相同类型。
        """
        L = CSFBase.as_array(L, like=CSFBase.first_tensor(L))
        p = [float(x) for x in np.asarray(pars, dtype=float).ravel()]
        n = len(p)

        if n == CSFBase.LUM_DEP_CONSTANT:
            return L * 0.0 + p[0]
        if n == CSFBase.LUM_DEP_POWER:
            return p[1] * L ** p[0]
        if n == CSFBase.LUM_DEP_SATURATING:
            return p[0] * (1.0 + p[1] / L) ** (-p[2])
        if n == CSFBase.LUM_DEP_BANDPASS:
            return p[0] * (1.0 + p[1] / L) ** (-p[2]) * (1.0 - (1.0 + p[3] / L) ** (-p[4]))
        raise NotImplementedError(f"get_lum_dep: 未实现的参数长度 {n}（只支持 1/2/3/5）")

    # ------- 数据集默认参数钩子 -------
    @staticmethod
    def get_dataset_par() -> Dict[str, Any]:
        """留给具体模型/数据集覆盖；默认返回空 dict。"""
        return {}

    # ------- 打印向量（便于粘贴） -------
    @staticmethod
    def print_vector(fh: IO[str], vec: np.ndarray):
        v = np.asarray(vec).ravel()
        if v.size > 1:
            fh.write("[ ")
            fh.write(" ".join(f"{x:g}" for x in v))
            fh.write(" ]")
        else:
            fh.write(f"{v.item():g}")
