import os
import sys
import json
import logging
from math import log, sqrt
from typing import Dict, Any, Tuple, IO

import numpy as np
import scipy.io

from CSF_py.CSF_base import CSFBase, ArrayLike


class CSF_ConeContrastMat(CSFBase):
    """
    Spatio-chromatic contrast sensitivity function for any colour direction.

    Three colour mechanisms (achromatic, red-green, yellow-violet) are obtained
    from cone contrast with a 3x3 mechanism matrix. Each mechanism has its own
    nested CSF (log-parabola + Rovamo's stimulus size model, with luminance
    dependent peak sensitivity, peak frequency, bandwidth and area exponent).
    Normalised mechanism contrasts are pooled with a Minkowski sum.

    Mantiuk, Kim, Ashraf, Xu, Luo, Martinovic, Wuerger.
    "Practical color contrast sensitivity functions for luminance levels up
    to 10000 cd/m^2". Color Imaging Conference (CIC28), 2020.
    """

    # ---- 常量（类属性）----
    # 机制矩阵中固定为 1 的位置；其余 6 个位置按列优先填入 par["colmat"]
    Mones = np.array([[1, 0, 0],
                      [1, 0, 0],
                      [0, 0, 1]], dtype=int)

    mech_signs = np.array([[ 1,  1, 1],
                           [ 1, -1, 1],
                           [-1, -1, 1]], dtype=float)

    beta: float = 2.0   # Minkowski 汇聚指数
    f_0: float = 0.65   # Rovamo 尺寸模型中的 f0

    def __init__(self, fitted_par_vector_file=None):
        """
        fitted_par_vector_file - 可选。拟合得到的参数向量（数组），或保存该向量的
            .mat（变量 fitted_par_vector）/.npy/.json 文件路径。
        """
        super().__init__()
        self.par: Dict[str, Any] = self.get_default_par()

        if fitted_par_vector_file is not None:
            pars_vector = self.load_par_vector(fitted_par_vector_file)
            self.set_pars(pars_vector)
            logging.info("Loaded %d fitted parameters for %s", pars_vector.size, self.full_name())

    # ---- 名称 ----
    def short_name(self) -> str:
        return "cone-contrast-mat"

    def full_name(self) -> str:
        return "SCCSF_ConeContrastMat"

    # ---- 颜色机制矩阵 ----
    def get_lms2acc(self) -> np.ndarray:
        """
        返回 3x3 机制矩阵（ach, rg, yv）。par["colmat"] 按列优先填入
        Mones==0 的位置，然后乘以符号矩阵。
        """
        vals = np.asarray(self.par["colmat"], dtype=float).ravel()
        maskF = (self.Mones == 0).flatten(order="F")
        if vals.size != maskF.sum():
            raise ValueError("colmat 的长度必须等于 Mones 中 0 的个数")

        M_flatF = np.ones(9, dtype=float)
        M_flatF[maskF] = vals
        M = M_flatF.reshape((3, 3), order="F")
        return M * self.mech_signs

    # ---- 检测概率 ----
    def pdet(self, freq, LMS_mean, LMS_delta, area) -> Tuple[ArrayLike, ArrayLike]:
        """
        Predict the probability of detecting a Gabor patch of certain chromatic
        direction and amplitude.

        freq - spatial frequency in cpd, (N,) or scalar
        LMS_mean - LMS of the background colour (CIE2006 CMF), (N,3) or (3,)
        LMS_delta - colour direction vector in the LMS space (LMS_peak-LMS_mean), (N,3) or (3,)
        area - area in deg^2, (N,) or scalar

        Returns:
        P - the probability of detection
        C - normalised detection contrast (1 when P=0.5)
        """
        freq, LMS_mean, LMS_delta, area = self.prepare_inputs(freq, LMS_mean, LMS_delta, area)
        like = self.first_tensor(LMS_mean)
        xp = self.array_module(like)

        M_lms2acc = self.as_array(self.get_lms2acc(), like)

        # 亮度只由 L+M 定义
        lum = self.last_dim(LMS_mean, 1) + self.last_dim(LMS_mean, 2)

        CC_LMS = LMS_delta / LMS_mean
        CC_ACC = CC_LMS @ M_lms2acc.T

        C_A = abs(self.last_dim(CC_ACC, 1))
        C_R = abs(self.last_dim(CC_ACC, 2))
        C_Y = abs(self.last_dim(CC_ACC, 3))

        # 对比度 / 阈值 = 对比度 * 敏感度
        C_A_n = C_A * self.csf_freq_size_lum(freq, area, 1, lum)
        C_R_n = C_R * self.csf_freq_size_lum(freq, area, 2, lum)
        C_Y_n = C_Y * self.csf_freq_size_lum(freq, area, 3, lum)

        beta = self.beta
        C = (C_A_n ** beta + C_R_n ** beta + C_Y_n ** beta) ** (1.0 / beta)

        P = 1 - xp.exp(log(0.5) * C)

        return self.as_array(P, like), self.as_array(C, like)

    # ---- 阈值与敏感度 ----
    def sensitivity(self, freq, LMS_mean, LMS_delta, area):
        """
        Predict the sensitivity for the detection of a Gabor patch of certain
        chromatic direction. Unlike pdet(), which only gives the probability of
        detection for a given LMS_delta, this method finds where the threshold is.

        Returns (S, LMS_delta_thr, P, C):
        S - sensitivity (the inverse of the RMS cone contrast at the threshold)
        LMS_delta_thr - vector of the same direction as LMS_delta, with the
            length adjusted so that it points to the detection threshold
        P, C - as returned by pdet()

        A zero LMS_delta has no threshold; S and LMS_delta_thr are NaN then.
        """
        freq, LMS_mean, LMS_delta, area = self.prepare_inputs(freq, LMS_mean, LMS_delta, area)

        P, C = self.pdet(freq, LMS_mean, LMS_delta, area)

        if bool((C == 0).any()):
            logging.warning("Zero-length colour direction: the detection threshold is undefined, returning NaN")

        # C 对 LMS_delta 是一次齐次的，直接缩放即可到达阈值（C=1）
        with np.errstate(divide="ignore", invalid="ignore"):
            LMS_delta_thr = LMS_delta / C[..., None]
            S = 1.0 / (((LMS_delta_thr / LMS_mean) ** 2).sum(-1) ** 0.5 / sqrt(3.0))

        return S, LMS_delta_thr, P, C

    # ---- 字典接口（与其他 CSF 模型一致）----
    def sensitivity_pars(self, csf_pars: Dict[str, Any]):
        """
        csf_pars 字段：s_frequency, lms_bkg 或 luminance, lms_delta（可选，
        默认无色方向）, area 或 ge_sigma。只返回敏感度 S。
        """
        valid_names = {"s_frequency", "luminance", "lms_bkg", "lms_delta", "area", "ge_sigma"}
        for name in csf_pars:
            if name not in valid_names:
                raise ValueError(f"参数结构包含未识别字段 '{name}'")

        pars = dict(csf_pars)  # 复制，避免原地改
        if "s_frequency" not in pars:
            raise ValueError("需要提供 's_frequency'")

        if "lms_bkg" not in pars:
            if "luminance" not in pars:
                raise ValueError("需要提供 'luminance' 或 'lms_bkg' 之一")
            lum = self.as_array(pars["luminance"], self.first_tensor(pars["luminance"]))
            lum = self.flatten_batch(lum)
            pars["lms_bkg"] = lum[..., None] * self.as_array(self.lms_d65_gray, self.first_tensor(lum))

        if "area" not in pars:
            if "ge_sigma" not in pars:
                raise ValueError("需要提供 'ge_sigma' 或 'area' 之一")
            pars["area"] = np.pi * self.as_array(pars["ge_sigma"], self.first_tensor(pars["ge_sigma"])) ** 2

        if "lms_delta" not in pars:
            pars["lms_delta"] = np.array([0.6855, 0.2951, 0.0194], dtype=float)

        S, _, _, _ = self.sensitivity(pars["s_frequency"], pars["lms_bkg"], pars["lms_delta"], pars["area"])
        return S

    # ---- 输入整理 ----
    def prepare_inputs(self, freq, LMS_mean, LMS_delta, area):
        """统一数组类型/形状，并检查批长度与物理有效性"""
        like = self.first_tensor(freq, LMS_mean, LMS_delta, area)

        freq = self.flatten_batch(self.as_array(freq, like))
        area = self.flatten_batch(self.as_array(area, like))
        LMS_mean = self.flatten_lms(self.as_array(LMS_mean, like), "LMS_mean")
        LMS_delta = self.flatten_lms(self.as_array(LMS_delta, like), "LMS_delta")

        self.check_batch(freq=freq, area=area, LMS_mean=LMS_mean, LMS_delta=LMS_delta)
        self.check_positive(freq=freq, area=area, LMS_mean=LMS_mean)
        return freq, LMS_mean, LMS_delta, area

    # ---- 单个机制的 CSF ----
    def csf_freq_size_lum(self, freq, area, color_dir, lum):
        """
        A nested CSF as a function of luminance for the mechanism(s) color_dir
        (1 - achromatic, 2 - red-green, 3 - yellow-violet). Any argument may be
        a scalar or an (N,) array.
        """
        like = self.first_tensor(freq, area, color_dir, lum)

        freq = self.flatten_batch(self.as_array(freq, like))
        area = self.flatten_batch(self.as_array(area, like))
        color_dir = self.flatten_batch(self.as_array(color_dir, like))
        lum = self.flatten_batch(self.as_array(lum, like))

        self.check_batch(freq=freq, area=area, color_dir=color_dir, lum=lum)
        self.check_positive(freq=freq, area=area, lum=lum)
        if bool(((color_dir != 1) & (color_dir != 2) & (color_dir != 3)).any()):
            raise ValueError("color_dir 只能取 1, 2 或 3")

        S_max = self.get_mechanism_par("S_max", color_dir, lum)
        f_max = self.get_mechanism_par("f_max", color_dir, lum)
        bw = self.get_mechanism_par("bw", color_dir, lum)
        gamma = self.get_mechanism_par("gamma", color_dir, lum)
        Ac_prime = self.get_mechanism_par("Ac_prime", color_dir, lum)

        return self.csf_freq_size(freq, area, color_dir, S_max, f_max, bw, gamma, Ac_prime)

    def get_mechanism_par(self, name: str, color_dir, lum):
        """按 color_dir 从 par["cm"] 中选出各项的（随亮度变化的）参数"""
        xp = self.array_module(color_dir, lum)
        v = color_dir * 0.0 + lum * 0.0
        for cc, cm in enumerate(self.par["cm"], start=1):
            v = xp.where(color_dir == cc, self.get_lum_dep(cm[name], lum), v)
        return v

    def csf_freq_size(self, freq, area, color_dir, S_max, f_max, bw, gamma, Ac_prime):
        """
        log-parabola + Rovamo's stimulus size model

        Rovamo, J., Luntinen, O., & Nasanen, R. (1993).
        Modelling the dependence of contrast sensitivity on grating area and spatial frequency.
        Vision Research, 33(18), 2773-2788. Equation on page 2784, one after (25).
        """
        xp = self.array_module(freq, area, S_max)

        S_peak = self.log_parabola(freq, color_dir, S_max, f_max, bw)

        k = Ac_prime + area * self.f_0

        A_f = area ** gamma * freq ** 2
        S = S_peak * xp.sqrt(A_f / (k + A_f))
        return S

    def log_parabola(self, freq, color_dir, S_max, f_max, bw):
        xp = self.array_module(freq, S_max, f_max)

        S_peak = S_max / 10.0 ** ((xp.log10(freq) - xp.log10(f_max)) ** 2 / (0.5 * 2.0 ** bw))

        # 色度通道低通：f < f_max 时保持峰值
        ss = (freq < f_max) & (color_dir > 1)
        return xp.where(ss, S_max, S_peak)

    # ---- 参数文件 ----
    @staticmethod
    def load_par_vector(source) -> np.ndarray:
        """
        数组直接返回；路径支持 .mat（fitted_par_vector）、.npy、.json。

        向量按 get_pars() 的顺序解释：ds（5）、cm[0..2]（各 S_max, f_max, bw,
        gamma, Ac_prime）、colmat（6）。ds 放在最前面是假设：原始 MATLAB
        拟合向量的字段顺序取决于其 get_dataset_par()，若该结构为空则顺序为
        cm, colmat, ds，此时需要先把向量末尾的 5 个 ds 值移到最前面。
        """
        if not isinstance(source, (str, os.PathLike)):
            return np.asarray(source, dtype=float).ravel()

        path = os.fspath(source)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Parameter file not found: {path}")

        ext = os.path.splitext(path)[1].lower()
        if ext == ".mat":
            lv = scipy.io.loadmat(path)
            if "fitted_par_vector" not in lv:
                raise ValueError(f"'{path}' does not contain the variable 'fitted_par_vector'")
            return np.asarray(lv["fitted_par_vector"], dtype=float).ravel()
        if ext == ".npy":
            return np.asarray(np.load(path), dtype=float).ravel()
        if ext == ".json":
            with open(path, "r") as f:
                data = json.load(f)
            if isinstance(data, dict):
                if "fitted_par_vector" not in data:
                    raise ValueError(f"'{path}' does not contain the key 'fitted_par_vector'")
                data = data["fitted_par_vector"]
            return np.asarray(data, dtype=float).ravel()
        raise ValueError(f"Unsupported parameter file type '{ext}' (use .mat, .npy or .json)")

    # ---- 打印参数（格式可直接粘贴到 get_default_par）----
    def print(self, fh: IO[str] = None):
        if fh is None:
            fh = sys.stdout

        for cc, cm in enumerate(self.par["cm"], start=1):
            for k, v in cm.items():
                fh.write(f"\tp.cm({cc}).{k} = ")
                self.print_vector(fh, np.asarray(v))
                fh.write(";\n")
            fh.write("\n")

        # 其余顶层参数（跳过 cm/ds）
        super().print(fh)

        fh.write("M_lms2acc =\n")
        fh.write(str(self.get_lms2acc()) + "\n")

    # ---- 默认参数 ----
    @staticmethod
    def get_dataset_par() -> Dict[str, Any]:
        p: Dict[str, Any] = CSFBase.get_dataset_par()
        p["ds"] = dict(
            xuqiang=1.78108,
            sw=1.38261,
            kim2013_ach=2.74226,
            kim2013_ch=0.706694,
            four_centres=1.11533,
        )
        return p

    @staticmethod
    def get_default_par() -> Dict[str, Any]:
        p: Dict[str, Any] = CSF_ConeContrastMat.get_dataset_par()

        # Fitted on 08/10/2020 - excluding the older observer data
        p["cm"] = [
            dict(
                S_max=[361635, 5.42519, 0.320472, 758334, 7.89951e-05],
                f_max=[2.25325, 1880.51, 0.190874],
                bw=1.04781,
                gamma=1.09774,
                Ac_prime=45.0225,
            ),
            dict(
                S_max=[468.431, 12.2482, 0.522667],
                f_max=0.10048,
                bw=2.82971,
                gamma=1.70328,
                Ac_prime=1.06655,
            ),
            dict(
                S_max=[12799.1, 160.831, 0.358707],
                f_max=1.03772e-07,
                bw=5.28354,
                gamma=1.44676,
                Ac_prime=0.389358,
            ),
        ]

        p["colmat"] = [0.00123883, 0.229778, 0.932581, 1.07013, 6.41585e-07, 0.0037047]

        return p
