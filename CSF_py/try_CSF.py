import logging
import numpy as np

from CSF_py.CSF_coneContrastMat import CSF_ConeContrastMat

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

# === 1) 初始化模型 ===
csf_model = CSF_ConeContrastMat()

# === 2) 背景与颜色方向（D65 灰，CIE 2006 LMS）===
lms_gray = np.array([0.739876529525622, 0.320136241543338, 0.020793708751515])

mc1 = lms_gray[0] / lms_gray[1]
mc2 = (lms_gray[0] + lms_gray[1]) / lms_gray[2]
M_lms2006_dkl = np.array([[1, 1, 0],
                          [1, -mc1, 0],
                          [-1, -1, mc2]])
M_dkl_lms2006 = np.linalg.inv(M_lms2006_dkl)

LUMs = 10.0 ** np.arange(-2, 5)
s_freqs = np.logspace(np.log10(0.25), np.log10(64), 50)
area = np.pi

dir_labels = ["L+M", "L-M", "S-(L+M)"]

# === 3) 计算敏感度 ===
for cc, label in enumerate(dir_labels):
    LMS_delta = M_dkl_lms2006 @ np.eye(3)[cc]
    for lum in LUMs:
        LMS_mean = lms_gray * lum
        S, _, _, _ = csf_model.sensitivity(s_freqs, LMS_mean, LMS_delta, area)
        logging.info(
            "%-8s %8g cd/m^2: peak S = %.5g at %.3g cpd",
            label, lum, np.max(S), s_freqs[np.argmax(S)],
        )

# === 4) 打印参数 ===
csf_model.print()
